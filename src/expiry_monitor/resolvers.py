"""
Domain-information resolvers.

A resolver performs one raw lookup for a domain and normalizes the answer
into a DomainInfo record. The lookup client wraps any resolver with a
timeout and retries; the resolver itself makes a single attempt.

The default resolver speaks RDAP over HTTPS (the JSON successor of WHOIS),
which registries expose for expiration dates, nameservers and contacts.
"""

from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable
from urllib.parse import urlparse

import httpx

from .enums import LookupErrorCode
from .exceptions import LookupFailedError
from .models import DomainInfo, as_utc


@runtime_checkable
class DomainResolver(Protocol):
    """Anything that can look up one domain."""

    async def lookup(self, domain_name: str) -> DomainInfo:
        """
        Look up a domain once.

        Raises:
            Exception: Any failure; the lookup client treats it as a failed attempt
        """
        ...


def parse_rdap_date(value: str) -> Optional[datetime]:
    """Parse an RDAP event date into an aware UTC datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return as_utc(parsed)


def _vcard_value(entity: dict, *properties: str) -> str:
    """First non-empty vCard property value of an RDAP entity, in the given order."""
    vcard = entity.get("vcardArray")
    if not isinstance(vcard, list) or len(vcard) < 2 or not isinstance(vcard[1], list):
        return ""
    for wanted in properties:
        for prop in vcard[1]:
            if (
                isinstance(prop, list)
                and len(prop) >= 4
                and prop[0] == wanted
                and isinstance(prop[3], str)
                and prop[3].strip()
            ):
                return prop[3].strip()
    return ""


def _entity_with_role(entities: Any, role: str) -> Optional[dict]:
    if not isinstance(entities, list):
        return None
    for entity in entities:
        if isinstance(entity, dict) and role in (entity.get("roles") or []):
            return entity
    return None


def parse_rdap_domain(json_data: dict) -> DomainInfo:
    """
    Normalize an RDAP domain object.

    Only the fields the monitor needs are read; everything else is ignored.
    """
    domain_name = json_data.get("ldhName") or json_data.get("unicodeName") or ""

    events: dict[str, Optional[datetime]] = {}
    raw_events = json_data.get("events", [])
    if isinstance(raw_events, list):
        for event in raw_events:
            if isinstance(event, dict):
                action = str(event.get("eventAction", "")).lower()
                if action and action not in events:
                    events[action] = parse_rdap_date(str(event.get("eventDate", "")))

    nameservers = []
    raw_nameservers = json_data.get("nameservers", [])
    if isinstance(raw_nameservers, list):
        for ns in raw_nameservers:
            if isinstance(ns, dict):
                ns_name = ns.get("ldhName") or ns.get("unicodeName") or ""
                if ns_name:
                    nameservers.append(ns_name.lower())

    entities = json_data.get("entities")
    registrar = ""
    registrar_entity = _entity_with_role(entities, "registrar")
    if registrar_entity is not None:
        registrar = _vcard_value(registrar_entity, "fn", "org")

    registrant = "Unknown"
    registrant_entity = _entity_with_role(entities, "registrant")
    if registrant_entity is not None:
        registrant = _vcard_value(registrant_entity, "fn", "org", "email") or "Unknown"

    return DomainInfo(
        domain_name=domain_name.lower(),
        expiration_time=events.get("expiration"),
        nameservers=nameservers,
        registrant=registrant,
        registrar=registrar,
        created_time=events.get("registration"),
        updated_time=events.get("last changed"),
    )


class RDAPResolver:
    """
    Async RDAP resolver with TLS enforcement.

    Queries `<base_url>/domain/<name>`; the default base is the rdap.org
    bootstrap redirector, which forwards to the authoritative registry.
    """

    def __init__(
        self,
        base_url: str = "https://rdap.org",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the resolver.

        Args:
            base_url: RDAP service base URL (must be HTTPS)
            timeout: HTTP timeout in seconds
            client: Optional shared client; one is created lazily otherwise

        Raises:
            LookupFailedError: If the base URL is not HTTPS
        """
        if urlparse(base_url).scheme.lower() != "https":
            raise LookupFailedError(
                code=LookupErrorCode.TLS_ERROR.value,
                message=f"RDAP endpoint must use HTTPS: {base_url}",
                details={"endpoint": base_url},
            )
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client
        self._owns_client = False

    async def __aenter__(self) -> "RDAPResolver":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=True,
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
            )
            self._owns_client = True
        return self._client

    async def lookup(self, domain_name: str) -> DomainInfo:
        url = f"{self._base_url}/domain/{domain_name}"
        try:
            response = await self._get_client().get(
                url,
                headers={"Accept": "application/rdap+json, application/json"},
            )
        except httpx.TimeoutException as e:
            raise LookupFailedError(
                code=LookupErrorCode.TIMEOUT.value,
                message=f"RDAP request timed out after {self._timeout}s",
                details={"domain": domain_name},
            ) from e
        except httpx.HTTPError as e:
            raise LookupFailedError(
                code=LookupErrorCode.NETWORK_ERROR.value,
                message=f"RDAP request failed: {e}",
                details={"domain": domain_name},
            ) from e

        if response.status_code == 404:
            raise LookupFailedError(
                code=LookupErrorCode.NOT_FOUND.value,
                message=f"Domain not found in RDAP: {domain_name}",
                details={"domain": domain_name, "http_status_code": 404},
            )
        if response.status_code == 429:
            raise LookupFailedError(
                code=LookupErrorCode.RATE_LIMITED.value,
                message="Rate limited by RDAP server",
                details={"domain": domain_name, "http_status_code": 429},
            )
        if response.status_code != 200:
            raise LookupFailedError(
                code=LookupErrorCode.SERVER_ERROR.value,
                message=f"Unexpected RDAP status: {response.status_code}",
                details={"domain": domain_name, "http_status_code": response.status_code},
            )

        try:
            json_data = response.json()
        except ValueError as e:
            raise LookupFailedError(
                code=LookupErrorCode.PARSE_ERROR.value,
                message=f"Failed to parse RDAP response: {e}",
                details={"domain": domain_name},
            ) from e
        if not isinstance(json_data, dict):
            raise LookupFailedError(
                code=LookupErrorCode.PARSE_ERROR.value,
                message="RDAP response is not a domain object",
                details={"domain": domain_name},
            )

        info = parse_rdap_domain(json_data)
        if not info.domain_name:
            info.domain_name = domain_name
        return info

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
