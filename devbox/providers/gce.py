"""Compute Engine provider implementation over the REST v1 API."""

from __future__ import annotations

import logging
from typing import Any, override

import httpx

from ..errors import (
    AuthenticationError,
    InstanceNotFoundError,
    ProviderError,
    TransportError,
)
from .base import (
    CloudProvider,
    CreatedInstance,
    InstanceInfo,
    InstanceRef,
    InstanceSpec,
    InstanceStatus,
    NetworkInterface,
    ProviderType,
)

logger = logging.getLogger(__name__)

GCE_API_BASE_URL = "https://compute.googleapis.com/compute/v1"
DEFAULT_SOURCE_IMAGE = "projects/debian-cloud/global/images/family/debian-12"


def build_instance_body(spec: InstanceSpec) -> dict[str, Any]:
    """Translate an InstanceSpec into an ``instances.insert`` request body."""
    body: dict[str, Any] = {
        "name": spec.name,
        "machineType": f"zones/{spec.zone}/machineTypes/{spec.machine_type}",
        "disks": [
            {
                "boot": True,
                "autoDelete": True,
                "initializeParams": {
                    "sourceImage": spec.source_image,
                    "diskSizeGb": str(spec.disk_size_gb),
                },
            }
        ],
        "networkInterfaces": [
            {
                "network": "global/networks/default",
                "accessConfigs": [
                    {"type": "ONE_TO_ONE_NAT", "name": "External NAT"},
                ],
            }
        ],
        "tags": {"items": [f"vm-{spec.name}", *spec.tags]},
    }
    if spec.startup_script:
        script = spec.startup_script
        if not script.startswith("#!"):
            script = f"#!/bin/bash\n{script}"
        body["metadata"] = {"items": [{"key": "startup-script", "value": script}]}
    return body


def parse_instance(payload: dict[str, Any]) -> InstanceInfo:
    interfaces: list[NetworkInterface] = []
    for raw in payload.get("networkInterfaces") or []:
        external = tuple(
            str(config["natIP"])
            for config in raw.get("accessConfigs") or []
            if config.get("natIP")
        )
        interfaces.append(
            NetworkInterface(
                network=raw.get("network"),
                internal_ip=raw.get("networkIP"),
                external_ips=external,
            )
        )
    return InstanceInfo(
        id=str(payload.get("id", "")),
        name=str(payload.get("name", "")),
        status=InstanceStatus.parse(payload.get("status")),
        network_interfaces=tuple(interfaces),
    )


class GceProvider(CloudProvider):
    """Compute Engine provider authenticated with an OAuth access token."""

    _access_token: str
    _client: httpx.AsyncClient

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = GCE_API_BASE_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not access_token:
            raise ValueError(
                "A GCP access token is required. Set DEVBOX_GCP_ACCESS_TOKEN "
                + "or pass it to GceProvider."
            )
        self._access_token = access_token
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(30.0, connect=10.0),
        )

    @property
    @override
    def provider_type(self) -> ProviderType:
        return ProviderType.GCE

    @override
    async def create_instance(self, spec: InstanceSpec) -> CreatedInstance:
        operation = await self._request(
            "POST",
            f"/projects/{spec.project}/zones/{spec.zone}/instances",
            json=build_instance_body(spec),
        )
        if operation.get("error"):
            raise ProviderError(f"Instance creation failed: {operation['error']}")
        instance_id = str(operation.get("targetId") or "")
        if not instance_id:
            raise ProviderError(
                f"Create operation for {spec.name} did not report an instance id"
            )
        logger.info("Requested instance %s (%s) in %s", spec.name, instance_id, spec.zone)
        return CreatedInstance(id=instance_id, name=spec.name)

    @override
    async def get_instance(self, ref: InstanceRef) -> InstanceInfo:
        payload = await self._request(
            "GET",
            f"/projects/{ref.project}/zones/{ref.zone}/instances/{ref.name}",
        )
        return parse_instance(payload)

    @override
    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._access_token}"}
        try:
            response = await self._client.request(method, path, json=json, headers=headers)
        except httpx.TransportError as exc:
            raise TransportError(f"Compute Engine API unreachable: {exc}") from exc

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Compute Engine rejected credentials: {_error_message(response)}",
                status_code=response.status_code,
            )
        if response.status_code == 404:
            raise InstanceNotFoundError(
                f"Not found: {path}",
                status_code=response.status_code,
            )
        if response.is_error:
            raise ProviderError(
                f"Compute Engine API error {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
            )
        return response.json()


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return response.text.strip()
