"""Shell script builders for remote execution and repository bootstrap."""

from __future__ import annotations

import re
import shlex
import textwrap

from .errors import ValidationError

PID_MARKER = "__DEVBOX_PID__"
DEFAULT_KEY_PATH = "~/.ssh/id_ed25519"

PUBLIC_KEY_PATTERN = re.compile(
    r"^(?:ssh-ed25519|ssh-rsa|ecdsa-sha2-nistp(?:256|384|521)) [A-Za-z0-9+/]+={0,3}(?: \S.*)?$"
)

_REPOSITORY_PATTERN = re.compile(
    r"^(?:git@github\.com:|https://github\.com/)?"
    r"(?P<owner>[A-Za-z0-9_.-]+)/(?P<name>[A-Za-z0-9_.-]+?)(?:\.git)?/?$"
)


def remote_shell_command() -> str:
    """Command for the exec channel: report our pid, then read the script from stdin.

    ``exec`` keeps the reported pid on the shell that runs the script, so the
    whole process tree can be signalled later.
    """
    report = f"printf '{PID_MARKER}%d\\n' $$ >&2"
    return f"bash -c {shlex.quote(f'{report}; exec bash -l -s')}"


def terminate_command(pid: int, signal_name: str = "TERM") -> str:
    """Signal ``pid`` and all of its descendants, deepest first."""
    if signal_name not in ("TERM", "KILL", "INT", "HUP"):
        raise ValueError(f"Unsupported signal: {signal_name}")
    script = textwrap.dedent(
        f"""
        kill_tree() {{
            for child in $(pgrep -P "$1" 2>/dev/null); do
                kill_tree "$child"
            done
            kill -{signal_name} "$1" 2>/dev/null || true
        }}
        kill_tree {int(pid)}
        """
    ).strip()
    return f"bash -c {shlex.quote(script)}"


def parse_repository(value: str) -> str:
    """Normalize ``owner/name``, SSH or HTTPS GitHub references to ``owner/name``."""
    match = _REPOSITORY_PATTERN.match(value.strip())
    if match is None:
        raise ValidationError(f"Not a GitHub repository reference: {value!r}")
    return f"{match['owner']}/{match['name']}"


def default_clone_directory(repository: str) -> str:
    return f"~/{repository.rsplit('/', 1)[-1]}"


def find_public_key(output: str) -> str | None:
    """Return the first line of ``output`` that looks like an SSH public key."""
    for line in output.splitlines():
        candidate = line.strip()
        if PUBLIC_KEY_PATTERN.match(candidate):
            return candidate
    return None


def key_generation_script(comment: str, key_path: str = DEFAULT_KEY_PATH) -> str:
    """Create (or reuse) a GitHub deploy key on the VM and print the public half."""
    return textwrap.dedent(
        f"""
        set -euo pipefail
        mkdir -p ~/.ssh
        chmod 700 ~/.ssh
        if [ ! -f {key_path} ]; then
            ssh-keygen -t ed25519 -N '' -C {shlex.quote(comment)} -f {key_path} -q
        fi
        cat > ~/.ssh/config << 'EOF'
        Host github.com
            HostName github.com
            User git
            IdentityFile {key_path}
            StrictHostKeyChecking accept-new
        EOF
        chmod 600 ~/.ssh/config
        cat {key_path}.pub
        """
    ).strip()


def clone_script(
    repository: str,
    *,
    git_email: str,
    git_name: str,
    branch: str | None = None,
    directory: str | None = None,
) -> str:
    target = directory or default_clone_directory(repository)
    branch_args = f"--branch {shlex.quote(branch)} " if branch else ""
    url = shlex.quote(f"git@github.com:{repository}.git")
    # Leading ~ must stay unquoted so the remote shell expands it.
    if target.startswith("~/"):
        target_arg = "~/" + shlex.quote(target[2:])
    else:
        target_arg = shlex.quote(target)
    return textwrap.dedent(
        f"""
        set -euo pipefail
        if ! command -v git >/dev/null 2>&1; then
            echo "Installing git..."
            sudo DEBIAN_FRONTEND=noninteractive apt-get update -qq
            sudo DEBIAN_FRONTEND=noninteractive apt-get install -y -qq git
        fi
        git config --global user.email {shlex.quote(git_email)}
        git config --global user.name {shlex.quote(git_name)}
        ssh-keyscan -t ed25519 github.com >> ~/.ssh/known_hosts 2>/dev/null || true
        if [ -d {target_arg}/.git ]; then
            echo "Repository already present at {target}"
        else
            echo "Cloning {repository} into {target}..."
            git clone {branch_args}{url} {target_arg}
        fi
        """
    ).strip()
