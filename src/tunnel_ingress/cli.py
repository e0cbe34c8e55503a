#!/usr/bin/env python3
"""tunnel-ingress - Container-driven Tunnel Ingress and DNS Reconciliation

Watches Docker container lifecycle events and keeps a Cloudflare Tunnel's
ingress rule table and the matching DNS CNAME records in step with the
containers that declare a Traefik-style Host rule for the managed domain.

For every container create/destroy event:
    1. The hostname is extracted from the container's router rule label.
    2. The tunnel ingress configuration is fetched, edited and written back
       only if it changed. The catch-all (fallback) rule is kept last.
    3. The CNAME record for the hostname is created or deleted.

Environment variables:

    Cloudflare:
        CF_API_URL             API base URL (default: https://api.cloudflare.com/client/v4)
        CF_ACCOUNT_ID          Account id owning the tunnel (required)
        CF_ZONE_ID             Zone id holding the DNS records (required)
        CF_DOMAIN              Managed domain; hostnames must contain it (required)
        CF_TUNNEL_ID           Tunnel id (required)
        CF_TUNNEL_SUB_ID       CNAME target suffix (default: cfargotunnel.com)
        CF_API_TOKEN           Bearer API token (required)
        CF_INGRESS_SERVICE     Service for new ingress rules and the fallback rule (required)
        CF_NO_TLS_VERIFY       Set originRequest.noTLSVerify on new rules (default: false)
        CF_PROXIED             Create proxied DNS records (default: false)

    Label matching:
        ROUTER_LABEL_PREFIX    Router label prefix (default: traefik.http.routers)
        RULE_LABEL_SUFFIX      Router rule label suffix (default: .rule)
                               Example label:
                                 traefik.http.routers.whoami.rule: Host(`whoami.example.com`)

    Runtime:
        CONFIG_PATH                 Optional YAML settings file (default: /config/tunnel-ingress.yaml)
                                    Keys are the lowercase names without the CF_ prefix, e.g.:
                                      account_id: "abc"
                                      domain: "example.com"
                                      proxied: true
                                    Environment variables take precedence over the file.
        DOCKER_HOST                 Docker daemon URL (default: docker environment defaults)
        REQUEST_TIMEOUT_SECONDS     Timeout for every API call (default: 10)
        RECONNECT_DELAY_SECONDS     Initial delay before resubscribing to events (default: 5)
        LOG_LEVEL                   DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import copy
import json
import logging
import os
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

import docker
import requests
import urllib3
import yaml
from docker.errors import DockerException, StreamParseError

# =============================================================================
# Configuration
# =============================================================================

CONFIG_PATH = os.getenv("CONFIG_PATH", "/config/tunnel-ingress.yaml")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DEFAULT_API_URL = "https://api.cloudflare.com/client/v4"
DEFAULT_TUNNEL_SUB_ID = "cfargotunnel.com"
DEFAULT_ROUTER_LABEL_PREFIX = "traefik.http.routers"
DEFAULT_RULE_LABEL_SUFFIX = ".rule"

MAX_RECONNECT_DELAY_SECONDS = 60.0

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Enums
# =============================================================================


class EventKind(Enum):
    """Container lifecycle actions the reconciler reacts to."""

    CREATE = "create"
    DESTROY = "destroy"


class DNSAction(Enum):
    """Outcome of the DNS step of a reconciliation pass.

    CREATED: A CNAME record was created for the hostname.
    DELETED: The hostname's CNAME record was found and deleted.
    MISSING: A delete was due but no matching record exists.
    SKIPPED: The ingress decision did not call for a DNS change.
    """

    CREATED = "created"
    DELETED = "deleted"
    MISSING = "missing"
    SKIPPED = "skipped"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Settings:
    """Runtime settings, loaded once at startup."""

    account_id: str
    zone_id: str
    domain: str
    tunnel_id: str
    api_token: str
    ingress_service: str
    api_url: str = DEFAULT_API_URL
    tunnel_sub_id: str = DEFAULT_TUNNEL_SUB_ID
    no_tls_verify: bool = False
    proxied: bool = False
    router_label_prefix: str = DEFAULT_ROUTER_LABEL_PREFIX
    rule_label_suffix: str = DEFAULT_RULE_LABEL_SUFFIX
    request_timeout_seconds: float = 10.0
    docker_host: str = ""
    reconnect_delay_seconds: float = 5.0

    @property
    def tunnel_target(self) -> str:
        return f"{self.tunnel_id}.{self.tunnel_sub_id}"


@dataclass(frozen=True)
class LifecycleEvent:
    """A container create/destroy notification."""

    kind: EventKind
    unit_id: str
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class IngressRule:
    """One entry of the tunnel ingress table.

    A rule without a hostname is the fallback (catch-all) rule. Keys the
    remote document carries that are not modelled here (``path``,
    ``originRequest`` settings beyond ours, ...) are kept in ``extra`` so a
    write-back never loses them.
    """

    service: str
    hostname: Optional[str] = None
    origin_request: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_fallback(self) -> bool:
        return not self.hostname

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngressRule":
        extra = {
            k: copy.deepcopy(v)
            for k, v in data.items()
            if k not in ("hostname", "service", "originRequest")
        }
        origin_request = data.get("originRequest")
        return cls(
            service=str(data.get("service") or ""),
            hostname=data.get("hostname") or None,
            origin_request=copy.deepcopy(origin_request) if isinstance(origin_request, dict) else None,
            extra=extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.hostname:
            data["hostname"] = self.hostname
        data["service"] = self.service
        if self.origin_request is not None:
            data["originRequest"] = copy.deepcopy(self.origin_request)
        for key, value in self.extra.items():
            data[key] = copy.deepcopy(value)
        return data


@dataclass(frozen=True)
class IngressTable:
    """Ordered ingress rules plus the opaque ``warp-routing`` sibling.

    ``version`` is the store's concurrency token (ETag or config version)
    for the document this table was read from, if the store exposes one.
    """

    rules: Tuple[IngressRule, ...] = ()
    warp_routing: Dict[str, Any] = field(default_factory=dict)
    version: Optional[str] = None

    @property
    def hostnames(self) -> List[str]:
        return [r.hostname for r in self.rules if r.hostname]

    def to_config(self) -> Dict[str, Any]:
        return {
            "ingress": [r.to_dict() for r in self.rules],
            "warp-routing": copy.deepcopy(self.warp_routing),
        }


@dataclass(frozen=True)
class DnsRecord:
    """A DNS record as returned by the DNS store."""

    id: str
    type: str
    name: str
    content: str
    proxied: bool = False


@dataclass(frozen=True)
class IngressResult:
    """Result of the ingress step of a reconciliation pass.

    ``existed`` is whether the hostname was in the table before the edit;
    the DNS step is driven by it. ``write_error`` is set when the edit was
    computed but could not be written.
    """

    applied: bool
    existed: bool
    write_error: Optional["RemoteWriteError"] = None


@dataclass
class ReconcileOutcome:
    """Summary of one reconciliation pass, used for logging and tests."""

    event: LifecycleEvent
    hostname: Optional[str] = None
    ingress: Optional[IngressResult] = None
    dns_action: Optional[DNSAction] = None
    errors: List["ReconcileError"] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


# =============================================================================
# Errors
# =============================================================================


class ReconcileError(Exception):
    """Base class for failures inside a reconciliation pass."""

    def __init__(
        self, message: str, *, status_code: Optional[int] = None, body: Any = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def describe(self) -> str:
        parts = [f"{type(self).__name__}: {self}"]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.body:
            parts.append(f"body={self.body}")
        return " ".join(parts)

    @classmethod
    def from_request_error(cls, message: str, error: requests.exceptions.RequestException):
        status_code = None
        body = None
        response = getattr(error, "response", None)
        if response is not None:
            status_code = response.status_code
            body = _response_body(response)
        return cls(f"{message}: {error}", status_code=status_code, body=body)


class MalformedEvent(ReconcileError):
    """The event payload could not be decoded."""


class RemoteReadError(ReconcileError):
    """The ingress document could not be read or was malformed."""


class RemoteWriteError(ReconcileError):
    """The ingress document write was rejected or failed."""


class DnsQueryError(ReconcileError):
    """Listing DNS records failed."""


class DnsCreateError(ReconcileError):
    """Creating a DNS record failed."""


class DnsDeleteError(ReconcileError):
    """Deleting a DNS record failed."""


def _response_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


# =============================================================================
# Hostname Extraction
# =============================================================================

HOST_RULE_OPEN = "Host("
HOST_RULE_QUOTES = "`\"'"


def parse_host_rule(value: str) -> Optional[str]:
    """Return the first host of a ``Host(`name`)`` matcher in a rule expression.

    The grammar accepted is ``Host(`` quote text quote ``)``, where the quote
    is a backtick, double or single quote and the closing quote must match
    the opening one. Malformed matchers are skipped; ``None`` means no
    well-formed, non-empty host was found.
    """
    if not value:
        return None

    pos = value.find(HOST_RULE_OPEN)
    while pos != -1:
        start = pos + len(HOST_RULE_OPEN)
        if start < len(value) and value[start] in HOST_RULE_QUOTES:
            quote = value[start]
            end = value.find(quote, start + 1)
            if end != -1 and value[end + 1 : end + 2] == ")":
                host = value[start + 1 : end]
                if host:
                    return host
        pos = value.find(HOST_RULE_OPEN, start)
    return None


def extract_hostname(
    metadata: Mapping[str, str],
    managed_domain: str,
    *,
    router_prefix: str = DEFAULT_ROUTER_LABEL_PREFIX,
    rule_suffix: str = DEFAULT_RULE_LABEL_SUFFIX,
) -> Optional[str]:
    """Find the routable hostname declared in container labels.

    Router rule labels are considered in lexicographic key order and the
    first one wins. The host is only returned if it contains
    ``managed_domain`` (substring match).
    """
    rule_keys = sorted(
        key for key in metadata if router_prefix in key and key.endswith(rule_suffix)
    )
    if not rule_keys:
        return None

    hostname = parse_host_rule(str(metadata.get(rule_keys[0]) or ""))
    if hostname and managed_domain in hostname:
        return hostname
    return None


# =============================================================================
# Ingress Table Editor
# =============================================================================


def has_hostname(table: IngressTable, hostname: str) -> bool:
    """Check whether a non-fallback rule for ``hostname`` exists."""
    return any(r.hostname == hostname for r in table.rules if not r.is_fallback)


def apply_event(
    table: IngressTable,
    hostname: str,
    kind: EventKind,
    *,
    service: str,
    no_tls_verify: bool = False,
) -> Tuple[IngressTable, bool]:
    """Add or remove the rule for ``hostname``.

    Returns the new table and whether it differs from ``table``. The input
    table is never modified.
    """
    exists = has_hostname(table, hostname)

    if kind == EventKind.CREATE and not exists:
        rule = IngressRule(
            service=service,
            hostname=hostname,
            origin_request={"noTLSVerify": no_tls_verify},
        )
        return IngressTable(table.rules + (rule,), table.warp_routing, table.version), True

    if kind == EventKind.DESTROY and exists:
        rules = tuple(r for r in table.rules if r.is_fallback or r.hostname != hostname)
        return IngressTable(rules, table.warp_routing, table.version), True

    return table, False


def normalize_fallback(table: IngressTable, fallback_service: str) -> IngressTable:
    """Make the table end with exactly one fallback rule.

    Hostname rules keep their order. The first fallback rule found is moved
    last and any further ones are dropped. If there is none, one pointing
    at ``fallback_service`` is appended.
    """
    fallbacks = [r for r in table.rules if r.is_fallback]
    rules = [r for r in table.rules if not r.is_fallback]

    if not fallbacks:
        rules.append(IngressRule(service=fallback_service))
        logger.info(f"Added fallback ingress rule -> {fallback_service}")
    else:
        rules.append(fallbacks[0])
        if len(fallbacks) > 1:
            logger.warning(
                f"Found {len(fallbacks)} fallback ingress rules, keeping the first "
                f"({fallbacks[0].service}) and dropping the rest"
            )

    return IngressTable(tuple(rules), table.warp_routing, table.version)


# =============================================================================
# Remote Store Interfaces and Implementations
# =============================================================================


class TunnelConfigStore(ABC):
    """Abstract store holding the tunnel ingress document."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the store name for logging."""
        pass

    @abstractmethod
    def fetch_table(self) -> IngressTable:
        """Fetch the current ingress table. Raises RemoteReadError."""
        pass

    @abstractmethod
    def write_table(self, table: IngressTable) -> None:
        """Replace the whole ingress document. Raises RemoteWriteError."""
        pass


class DNSRecordStore(ABC):
    """Abstract store holding the zone's DNS records."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the store name for logging."""
        pass

    @abstractmethod
    def find_records(self, name: str, record_type: str = "CNAME") -> List[DnsRecord]:
        """List records by name and type. Raises DnsQueryError."""
        pass

    @abstractmethod
    def create_record(self, name: str, content: str, proxied: bool) -> DnsRecord:
        """Create a CNAME record. Raises DnsCreateError."""
        pass

    @abstractmethod
    def delete_record(self, record_id: str) -> None:
        """Delete a record by id. Raises DnsDeleteError."""
        pass


def _cloudflare_session(api_token: str) -> requests.Session:
    session = requests.Session()
    session.headers.update(
        {
            "Authorization": f"Bearer {api_token}",
            "Content-Type": "application/json",
        }
    )
    return session


def _cloudflare_result(response: requests.Response, error_cls: type, action: str) -> Any:
    """Unwrap a Cloudflare API envelope, raising ``error_cls`` on failure."""
    try:
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise error_cls.from_request_error(f"Failed to {action}", e) from e

    try:
        data = response.json()
    except ValueError as e:
        raise error_cls(
            f"Failed to {action}: invalid JSON response",
            status_code=response.status_code,
            body=response.text,
        ) from e

    if not isinstance(data, dict):
        raise error_cls(
            f"Failed to {action}: unexpected response type {type(data).__name__}",
            status_code=response.status_code,
            body=data,
        )
    if data.get("success") is False:
        raise error_cls(
            f"Failed to {action}: API reported failure",
            status_code=response.status_code,
            body=data.get("errors") or data,
        )
    return data.get("result")


class CloudflareTunnelConfigStore(TunnelConfigStore):
    """Cloudflare Tunnel remote configuration store."""

    def __init__(
        self,
        api_url: str,
        account_id: str,
        tunnel_id: str,
        api_token: str,
        timeout_seconds: float = 10.0,
    ):
        self._url = (
            f"{api_url.rstrip('/')}/accounts/{account_id}/cfd_tunnel/{tunnel_id}/configurations"
        )
        self._timeout = timeout_seconds
        self._session = _cloudflare_session(api_token)

    @property
    def name(self) -> str:
        return "Cloudflare Tunnel"

    def fetch_table(self) -> IngressTable:
        try:
            response = self._session.get(self._url, timeout=self._timeout)
        except requests.exceptions.RequestException as e:
            raise RemoteReadError.from_request_error("Failed to fetch tunnel configuration", e) from e

        result = _cloudflare_result(response, RemoteReadError, "fetch tunnel configuration")
        config = result.get("config") if isinstance(result, dict) else None
        if not isinstance(config, dict):
            raise RemoteReadError(
                "Tunnel configuration response missing `result.config`",
                status_code=response.status_code,
                body=result,
            )

        raw_ingress = config.get("ingress") or []
        if not isinstance(raw_ingress, list):
            raise RemoteReadError(
                f"Tunnel configuration `ingress` is {type(raw_ingress).__name__}, expected list",
                status_code=response.status_code,
                body=config,
            )

        rules = []
        for item in raw_ingress:
            if not isinstance(item, dict):
                raise RemoteReadError(
                    f"Malformed ingress rule: {item!r}",
                    status_code=response.status_code,
                    body=config,
                )
            rules.append(IngressRule.from_dict(item))

        warp_routing = config.get("warp-routing") or {}
        version = response.headers.get("ETag") or (
            str(result["version"]) if result.get("version") is not None else None
        )
        return IngressTable(tuple(rules), copy.deepcopy(warp_routing), version)

    def write_table(self, table: IngressTable) -> None:
        headers = {}
        # If-Match needs a strong ETag; weak tags and config versions never match.
        if table.version and table.version.startswith('"'):
            headers["If-Match"] = table.version
        try:
            response = self._session.put(
                self._url,
                json={"config": table.to_config()},
                headers=headers,
                timeout=self._timeout,
            )
        except requests.exceptions.RequestException as e:
            raise RemoteWriteError.from_request_error("Failed to write tunnel configuration", e) from e

        _cloudflare_result(response, RemoteWriteError, "write tunnel configuration")


class CloudflareDNSRecordStore(DNSRecordStore):
    """Cloudflare zone DNS record store."""

    def __init__(
        self,
        api_url: str,
        zone_id: str,
        api_token: str,
        timeout_seconds: float = 10.0,
    ):
        self._url = f"{api_url.rstrip('/')}/zones/{zone_id}/dns_records"
        self._timeout = timeout_seconds
        self._session = _cloudflare_session(api_token)

    @property
    def name(self) -> str:
        return "Cloudflare DNS"

    def find_records(self, name: str, record_type: str = "CNAME") -> List[DnsRecord]:
        try:
            response = self._session.get(
                self._url,
                params={"type": record_type, "name": name},
                timeout=self._timeout,
            )
        except requests.exceptions.RequestException as e:
            raise DnsQueryError.from_request_error(f"Failed to query DNS records for {name}", e) from e

        result = _cloudflare_result(response, DnsQueryError, f"query DNS records for {name}")
        if not isinstance(result, list):
            raise DnsQueryError(
                f"Unexpected DNS query result for {name}",
                status_code=response.status_code,
                body=result,
            )

        records = []
        for r in result:
            if not isinstance(r, dict) or not r.get("id") or not r.get("name"):
                logger.warning(f"Skipping malformed DNS record: {r}")
                continue
            records.append(_dns_record_from_dict(r))
        return records

    def create_record(self, name: str, content: str, proxied: bool) -> DnsRecord:
        data = {"type": "CNAME", "name": name, "content": content, "proxied": proxied}
        try:
            response = self._session.post(self._url, json=data, timeout=self._timeout)
        except requests.exceptions.RequestException as e:
            raise DnsCreateError.from_request_error(f"Failed to create DNS record for {name}", e) from e

        result = _cloudflare_result(response, DnsCreateError, f"create DNS record for {name}")
        if isinstance(result, dict) and result.get("id"):
            return _dns_record_from_dict(result)
        return DnsRecord(id="", type="CNAME", name=name, content=content, proxied=proxied)

    def delete_record(self, record_id: str) -> None:
        try:
            response = self._session.delete(f"{self._url}/{record_id}", timeout=self._timeout)
        except requests.exceptions.RequestException as e:
            raise DnsDeleteError.from_request_error(f"Failed to delete DNS record {record_id}", e) from e

        _cloudflare_result(response, DnsDeleteError, f"delete DNS record {record_id}")


def _dns_record_from_dict(data: Dict[str, Any]) -> DnsRecord:
    return DnsRecord(
        id=str(data.get("id") or ""),
        type=str(data.get("type") or "CNAME"),
        name=str(data.get("name") or ""),
        content=str(data.get("content") or ""),
        proxied=bool(data.get("proxied", False)),
    )


# =============================================================================
# Reconcilers
# =============================================================================


class IngressReconciler:
    """Read-modify-write of the tunnel ingress table for one hostname."""

    def __init__(
        self,
        store: TunnelConfigStore,
        *,
        service: str,
        no_tls_verify: bool = False,
        fallback_service: Optional[str] = None,
    ):
        self.store = store
        self.service = service
        self.no_tls_verify = no_tls_verify
        self.fallback_service = fallback_service or service
        self._lock = threading.Lock()

    def reconcile_ingress(self, hostname: str, kind: EventKind) -> IngressResult:
        """Bring the ingress table in line with ``kind`` for ``hostname``.

        Raises RemoteReadError if the table cannot be fetched. A failed write
        is returned in the result, not raised.
        """
        with self._lock:
            current = self.store.fetch_table()
            logger.debug(
                f"Current ingress: {json.dumps(current.to_config(), indent=2, sort_keys=True)}"
            )

            existed = has_hostname(current, hostname)
            table, changed = apply_event(
                current,
                hostname,
                kind,
                service=self.service,
                no_tls_verify=self.no_tls_verify,
            )
            if not changed:
                logger.info(f"Ingress unchanged for {hostname}, skipping write")
                return IngressResult(applied=False, existed=existed)

            table = normalize_fallback(table, self.fallback_service)
            logger.debug(f"New ingress: {json.dumps(table.to_config(), indent=2, sort_keys=True)}")

            try:
                self.store.write_table(table)
            except RemoteWriteError as e:
                return IngressResult(applied=False, existed=existed, write_error=e)

            verb = "Added" if kind == EventKind.CREATE else "Removed"
            logger.info(f"{verb} ingress rule for {hostname} ({self.store.name})")
            return IngressResult(applied=True, existed=existed)


class DNSReconciler:
    """Creates or deletes the CNAME record paired with an ingress decision."""

    def __init__(self, store: DNSRecordStore, *, target: str, proxied: bool = False):
        self.store = store
        self.target = target
        self.proxied = proxied

    def reconcile_dns(self, hostname: str, kind: EventKind, existed: bool) -> DNSAction:
        """Apply the DNS change implied by the ingress decision.

        Raises DnsQueryError, DnsCreateError or DnsDeleteError. Each remote
        call is made once.
        """
        if kind == EventKind.CREATE and not existed:
            record = self.store.create_record(hostname, self.target, self.proxied)
            logger.info(
                f"Created DNS record {hostname} -> {self.target} "
                f"(proxied={self.proxied}, id={record.id or '?'})"
            )
            return DNSAction.CREATED

        if kind == EventKind.DESTROY and existed:
            records = self.store.find_records(hostname, "CNAME")
            record = next((r for r in records if r.name == hostname and r.id), None)
            if record is None:
                logger.info(f"No matching DNS record to delete for {hostname}")
                return DNSAction.MISSING
            self.store.delete_record(record.id)
            logger.info(f"Deleted DNS record {hostname} (id={record.id})")
            return DNSAction.DELETED

        return DNSAction.SKIPPED


# =============================================================================
# Core Syncer
# =============================================================================


def decode_event(raw: Any) -> Optional[LifecycleEvent]:
    """Decode a Docker event into a LifecycleEvent.

    Accepts an already decoded dict or JSON text/bytes. Returns None for
    events that are not container create/destroy actions. Raises
    MalformedEvent when the payload cannot be understood.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEvent(f"Event is not valid UTF-8: {e}") from e
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise MalformedEvent(f"Event is not valid JSON: {e}", body=raw) from e
    if not isinstance(raw, dict):
        raise MalformedEvent(f"Event is {type(raw).__name__}, expected object", body=raw)

    event_type = raw.get("Type")
    if event_type is not None and event_type != "container":
        return None

    action = raw.get("Action") or raw.get("status")
    if not isinstance(action, str) or not action:
        raise MalformedEvent("Event has no Action", body=raw)
    try:
        kind = EventKind(action)
    except ValueError:
        return None

    actor = raw.get("Actor") or {}
    if not isinstance(actor, dict):
        raise MalformedEvent("Event Actor is not an object", body=raw)
    attributes = actor.get("Attributes") or {}
    if not isinstance(attributes, dict):
        raise MalformedEvent("Event Actor.Attributes is not an object", body=raw)

    unit_id = raw.get("id") or actor.get("ID") or ""
    metadata = {str(k): str(v) for k, v in attributes.items() if v is not None}
    return LifecycleEvent(kind=kind, unit_id=str(unit_id), metadata=metadata)


class TunnelIngressSyncer:
    def __init__(
        self,
        *,
        ingress: IngressReconciler,
        dns: DNSReconciler,
        managed_domain: str,
        router_prefix: str = DEFAULT_ROUTER_LABEL_PREFIX,
        rule_suffix: str = DEFAULT_RULE_LABEL_SUFFIX,
    ):
        self.ingress = ingress
        self.dns = dns
        self.managed_domain = managed_domain
        self.router_prefix = router_prefix
        self.rule_suffix = rule_suffix

    def handle_event(self, event: LifecycleEvent) -> ReconcileOutcome:
        """Run one reconciliation pass. Remote failures end up in ``errors``."""
        outcome = ReconcileOutcome(event=event)
        logger.info(f"Event: {event.kind.value} container={event.unit_id[:12]}")

        hostname = extract_hostname(
            event.metadata,
            self.managed_domain,
            router_prefix=self.router_prefix,
            rule_suffix=self.rule_suffix,
        )
        if not hostname:
            logger.debug(f"No hostname for {self.managed_domain} on {event.unit_id[:12]}, skipping")
            return outcome

        outcome.hostname = hostname
        logger.info(f"Detected hostname: {hostname}")

        try:
            result = self.ingress.reconcile_ingress(hostname, event.kind)
        except RemoteReadError as e:
            outcome.errors.append(e)
            logger.error(f"Ingress reconciliation aborted for {hostname}: {e.describe()}")
            return outcome

        outcome.ingress = result
        if result.write_error is not None:
            outcome.errors.append(result.write_error)
            logger.error(
                f"Ingress write failed for {hostname}, continuing with DNS: "
                f"{result.write_error.describe()}"
            )

        try:
            outcome.dns_action = self.dns.reconcile_dns(hostname, event.kind, result.existed)
        except (DnsQueryError, DnsCreateError, DnsDeleteError) as e:
            outcome.errors.append(e)
            logger.error(f"DNS reconciliation failed for {hostname}: {e.describe()}")

        return outcome

    def process(self, raw: Any) -> Optional[ReconcileOutcome]:
        """Decode and handle one raw event without ever raising on failure."""
        try:
            event = decode_event(raw)
        except MalformedEvent as e:
            logger.error(f"Dropping undecodable event: {e.describe()}")
            return None

        if event is None:
            return None

        try:
            return self.handle_event(event)
        except Exception as e:
            logger.error(f"Unexpected error handling event {event.unit_id[:12]}: {e}", exc_info=True)
            return None

    def watch(self, events: Iterable[Any]) -> None:
        for raw in events:
            self.process(raw)


# =============================================================================
# Event Source
# =============================================================================


class DockerEventSource:
    """Subscription to Docker container create/destroy events."""

    FILTERS = {"type": "container", "event": [k.value for k in EventKind]}

    def __init__(self, base_url: str = "", client: Optional[docker.DockerClient] = None):
        self._base_url = base_url
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            if self._base_url:
                self._client = docker.DockerClient(base_url=self._base_url)
            else:
                self._client = docker.from_env()
        return self._client

    def stream(self) -> Iterator[Dict[str, Any]]:
        return self.client.events(decode=True, filters=self.FILTERS)


def run_forever(
    syncer: TunnelIngressSyncer,
    source: DockerEventSource,
    *,
    reconnect_delay: float = 5.0,
    max_reconnects: Optional[int] = None,
) -> None:
    """Feed events to the syncer, resubscribing whenever the stream breaks.

    The delay doubles after each consecutive failure, capped at
    MAX_RECONNECT_DELAY_SECONDS, and resets once an event arrives.
    ``max_reconnects`` bounds the number of resubscriptions (None: forever).
    """
    delay = reconnect_delay
    reconnects = 0
    while True:
        try:
            logger.info("Watching Docker container events...")
            for raw in source.stream():
                delay = reconnect_delay
                syncer.process(raw)
            logger.warning("Docker event stream ended")
        except StreamParseError as e:
            logger.error(f"Dropping undecodable event, resubscribing: {e}")
        except (
            DockerException,
            requests.exceptions.RequestException,
            urllib3.exceptions.ProtocolError,
            OSError,
            ValueError,
        ) as e:
            logger.error(f"Docker event stream failed: {e}")

        if max_reconnects is not None and reconnects >= max_reconnects:
            return
        reconnects += 1
        logger.info(f"Resubscribing to Docker events in {delay:.0f}s")
        time.sleep(delay)
        delay = min(delay * 2, MAX_RECONNECT_DELAY_SECONDS)


# =============================================================================
# Settings Loading
# =============================================================================

SETTINGS_ENV = {
    "api_url": "CF_API_URL",
    "account_id": "CF_ACCOUNT_ID",
    "zone_id": "CF_ZONE_ID",
    "domain": "CF_DOMAIN",
    "tunnel_id": "CF_TUNNEL_ID",
    "tunnel_sub_id": "CF_TUNNEL_SUB_ID",
    "api_token": "CF_API_TOKEN",
    "ingress_service": "CF_INGRESS_SERVICE",
    "no_tls_verify": "CF_NO_TLS_VERIFY",
    "proxied": "CF_PROXIED",
    "router_label_prefix": "ROUTER_LABEL_PREFIX",
    "rule_label_suffix": "RULE_LABEL_SUFFIX",
    "request_timeout_seconds": "REQUEST_TIMEOUT_SECONDS",
    "docker_host": "DOCKER_HOST",
    "reconnect_delay_seconds": "RECONNECT_DELAY_SECONDS",
}

REQUIRED_SETTINGS = (
    "account_id",
    "zone_id",
    "domain",
    "tunnel_id",
    "api_token",
    "ingress_service",
)


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_float(value: Any, *, default: float) -> float:
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid number '{value}', using {default}")
        return default


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load settings from a YAML file, returning {} if absent or unreadable."""
    path = Path(config_path)
    if not config_path or not path.is_file():
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.error(f"Config file {config_path} must contain a mapping")
        return {}
    return data


def collect_settings(
    config_path: str = "", environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """Merge YAML file values with environment variables (env wins)."""
    environ = os.environ if environ is None else environ
    raw: Dict[str, Any] = {}
    file_values = load_config_file(config_path)
    for key, env_name in SETTINGS_ENV.items():
        if key in file_values and file_values[key] is not None:
            raw[key] = file_values[key]
        env_value = environ.get(env_name)
        if env_value is not None and env_value.strip() != "":
            raw[key] = env_value.strip()

    unknown = sorted(set(file_values) - set(SETTINGS_ENV))
    if unknown:
        logger.warning(f"Ignoring unknown config keys in {config_path}: {', '.join(unknown)}")
    return raw


def validate_config(raw: Mapping[str, Any]) -> List[str]:
    """Return a list of configuration problems (empty when valid)."""
    errors = []
    for key in REQUIRED_SETTINGS:
        if not str(raw.get(key) or "").strip():
            errors.append(f"{SETTINGS_ENV[key]} is required")

    api_url = str(raw.get("api_url") or DEFAULT_API_URL)
    if not api_url.startswith(("http://", "https://")):
        errors.append(f"CF_API_URL must be an http(s) URL, got '{api_url}'")

    timeout = raw.get("request_timeout_seconds")
    if timeout is not None and _parse_float(timeout, default=-1.0) <= 0:
        errors.append(f"REQUEST_TIMEOUT_SECONDS must be a positive number, got '{timeout}'")
    return errors


def build_settings(raw: Mapping[str, Any]) -> Settings:
    """Build Settings from validated raw values."""
    return Settings(
        account_id=str(raw["account_id"]).strip(),
        zone_id=str(raw["zone_id"]).strip(),
        domain=str(raw["domain"]).strip(),
        tunnel_id=str(raw["tunnel_id"]).strip(),
        api_token=str(raw["api_token"]).strip(),
        ingress_service=str(raw["ingress_service"]).strip(),
        api_url=str(raw.get("api_url") or DEFAULT_API_URL).strip(),
        tunnel_sub_id=str(raw.get("tunnel_sub_id") or DEFAULT_TUNNEL_SUB_ID).strip(),
        no_tls_verify=_parse_bool(raw.get("no_tls_verify"), default=False),
        proxied=_parse_bool(raw.get("proxied"), default=False),
        router_label_prefix=str(raw.get("router_label_prefix") or DEFAULT_ROUTER_LABEL_PREFIX),
        rule_label_suffix=str(raw.get("rule_label_suffix") or DEFAULT_RULE_LABEL_SUFFIX),
        request_timeout_seconds=_parse_float(raw.get("request_timeout_seconds"), default=10.0),
        docker_host=str(raw.get("docker_host") or "").strip(),
        reconnect_delay_seconds=max(
            1.0, _parse_float(raw.get("reconnect_delay_seconds"), default=5.0)
        ),
    )


def create_syncer(settings: Settings) -> TunnelIngressSyncer:
    """Factory wiring the Cloudflare stores into a syncer."""
    tunnel_store = CloudflareTunnelConfigStore(
        settings.api_url,
        settings.account_id,
        settings.tunnel_id,
        settings.api_token,
        timeout_seconds=settings.request_timeout_seconds,
    )
    dns_store = CloudflareDNSRecordStore(
        settings.api_url,
        settings.zone_id,
        settings.api_token,
        timeout_seconds=settings.request_timeout_seconds,
    )
    return TunnelIngressSyncer(
        ingress=IngressReconciler(
            tunnel_store,
            service=settings.ingress_service,
            no_tls_verify=settings.no_tls_verify,
        ),
        dns=DNSReconciler(dns_store, target=settings.tunnel_target, proxied=settings.proxied),
        managed_domain=settings.domain,
        router_prefix=settings.router_label_prefix,
        rule_suffix=settings.rule_label_suffix,
    )


def check_connection(store: TunnelConfigStore) -> bool:
    """Check the ingress document is readable before starting to watch."""
    try:
        table = store.fetch_table()
    except RemoteReadError as e:
        logger.error(f"Failed to read from {store.name}: {e.describe()}")
        return False
    logger.info(f"{store.name} connection successful ({len(table.hostnames)} hostname rules)")
    return True


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    logger.info("tunnel-ingress: docker -> cloudflare tunnel")

    raw = collect_settings(CONFIG_PATH)
    errors = validate_config(raw)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    settings = build_settings(raw)
    syncer = create_syncer(settings)

    logger.info(f"Managed domain: {settings.domain}")
    logger.info(f"Tunnel: {settings.tunnel_id} (CNAME target {settings.tunnel_target})")
    logger.info(f"Ingress service: {settings.ingress_service} (noTLSVerify={settings.no_tls_verify})")
    logger.info(f"DNS proxied: {settings.proxied}")
    logger.info(f"Rule labels: {settings.router_label_prefix}.*{settings.rule_label_suffix}")

    if not check_connection(syncer.ingress.store):
        logger.error("Cannot read tunnel configuration. Exiting.")
        sys.exit(1)

    source = DockerEventSource(settings.docker_host)
    try:
        run_forever(syncer, source, reconnect_delay=settings.reconnect_delay_seconds)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
