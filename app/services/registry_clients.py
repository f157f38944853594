# app/services/registry_clients.py
"""
Clients for the external national registries.

- Topus: identity registry, resolves (document type, number) to name,
  age and health insurer. Lookups are cached in Redis when available.
- HiSmart: clinical history registry, used to enrich a patient profile.
- RETHUS: registry of licensed health professionals.

None of these calls are retried. Every failure (transport, non-2xx,
unparseable body, missing configuration) surfaces as RegistryLookupError.
"""

import logging
from typing import Any

import httpx

from app.core.config import get_settings
from app.core.redis import cache_get_json, cache_set_json
from app.schemas.registry import RegistryIdentity, RethusResult

logger = logging.getLogger(__name__)


class RegistryLookupError(Exception):
    """Raised when an external registry cannot give a usable answer."""


def _post(
    url: str,
    *,
    timeout: float,
    transport: httpx.BaseTransport | None,
    **kwargs: Any,
) -> Any:
    try:
        with httpx.Client(timeout=timeout, transport=transport) as client:
            response = client.post(url, **kwargs)
    except httpx.HTTPError as exc:
        raise RegistryLookupError(f"Registry request failed: {exc}") from exc

    if response.status_code >= 400:
        raise RegistryLookupError(f"Registry responded with HTTP {response.status_code}")

    try:
        return response.json()
    except ValueError as exc:
        raise RegistryLookupError("Registry returned a non-JSON body") from exc


class TopusClient:
    def __init__(
        self,
        api_url: str,
        api_token: str | None,
        timeout: float = 30.0,
        cache_ttl: int = 600,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_url = api_url
        self.api_token = api_token
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self._transport = transport

    def fetch(self, document_type: str, identification: str) -> dict[str, Any]:
        """
        Raw Topus payload for one person.
        """
        if not self.api_token:
            raise RegistryLookupError("Topus registry is not configured")

        cache_key = f"topus:{document_type}:{identification}"
        cached = cache_get_json(cache_key)
        if isinstance(cached, dict):
            return cached

        logger.info(f"Querying Topus for {document_type} {identification}")
        payload = _post(
            self.api_url,
            timeout=self.timeout,
            transport=self._transport,
            data={
                "token": self.api_token,
                "doc_type": document_type,
                "identification": identification,
            },
        )
        if not isinstance(payload, dict):
            raise RegistryLookupError("Topus returned an unexpected payload")

        cache_set_json(cache_key, payload, ttl=self.cache_ttl)
        return payload

    def lookup_identity(
        self, document_type: str, identification: str
    ) -> tuple[RegistryIdentity, dict[str, Any]]:
        """
        Typed identity plus the raw payload it came from.

        Raises RegistryLookupError when the registry fails or knows no one
        by that document.
        """
        payload = self.fetch(document_type, identification)
        identity = RegistryIdentity.from_payload(payload)
        if not identity.is_valid:
            raise RegistryLookupError("Topus returned no identity for this document")
        return identity, payload


class HismartClient:
    def __init__(
        self,
        api_url: str | None,
        api_token: str | None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_url = api_url
        self.api_token = api_token
        self.timeout = timeout
        self._transport = transport

    def fetch_clinical_data(self, document_type: str, identification: str) -> dict[str, Any]:
        if not self.api_url or not self.api_token:
            raise RegistryLookupError("HiSmart registry is not configured")

        logger.info(f"Querying HiSmart for {document_type} {identification}")
        payload = _post(
            self.api_url,
            timeout=self.timeout,
            transport=self._transport,
            json={"documentType": document_type, "identification": identification},
            headers={"Authorization": f"Bearer {self.api_token}"},
        )
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            return payload["data"]
        if not isinstance(payload, dict):
            raise RegistryLookupError("HiSmart returned an unexpected payload")
        return payload


class RethusClient:
    def __init__(
        self,
        api_url: str | None,
        api_key: str | None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def check_professional(
        self, document_type: str, document_number: str
    ) -> tuple[RethusResult, dict[str, Any]]:
        if not self.api_url:
            raise RegistryLookupError("RETHUS registry is not configured")

        headers = {"x-api-key": self.api_key} if self.api_key else {}
        payload = _post(
            self.api_url,
            timeout=self.timeout,
            transport=self._transport,
            json={"tipoDocumento": document_type, "numeroDocumento": document_number},
            headers=headers,
        )
        if not isinstance(payload, dict):
            raise RegistryLookupError("RETHUS returned an unexpected payload")
        return RethusResult.model_validate(payload), payload


def get_topus_client() -> TopusClient:
    settings = get_settings()
    return TopusClient(
        api_url=settings.topus_api_url,
        api_token=settings.topus_api_token,
        timeout=settings.registry_timeout_seconds,
        cache_ttl=settings.registry_cache_ttl_seconds,
    )


def get_hismart_client() -> HismartClient:
    settings = get_settings()
    return HismartClient(
        api_url=settings.hismart_api_url,
        api_token=settings.hismart_api_token,
        timeout=settings.registry_timeout_seconds,
    )


def get_rethus_client() -> RethusClient:
    settings = get_settings()
    return RethusClient(
        api_url=settings.rethus_api_url,
        api_key=settings.rethus_api_key,
        timeout=settings.registry_timeout_seconds,
    )
