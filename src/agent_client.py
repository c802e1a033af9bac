#!/usr/bin/env python3
# src/agent_client.py
"""
Administrative command channel to the agent sidecar running next to each
MariaDB instance.

Every call is a blocking HTTP request with a bounded timeout. Timeouts,
connection failures and non-2xx answers surface as TransientError so the
whole reconciliation is retried with back-off.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Union

import requests

from errors import TransientError

logger = logging.getLogger("mariadb-operator.agent")

USER_AGENT = "mariadb-operator/1.0"

# Galera local states reported by the agent
STATE_SYNCED = "synced"
STATE_JOINING = "joining"
STATE_JOINED = "joined"
STATE_DONOR = "donor"
STATE_DISCONNECTED = "disconnected"
STATE_UNINITIALIZED = "uninitialized"

TRANSFER_STATES = (STATE_JOINING, STATE_JOINED, STATE_DONOR)

ROLE_PRIMARY = "primary"
ROLE_REPLICA = "replica"
ROLE_NONE = "none"


def parse_position(value: Union[int, str, None]) -> Optional[int]:
    """Turn an agent position into a comparable integer.

    Accepts plain integers and MariaDB GTIDs ("domain-server-sequence"); the
    sequence number is the comparable part. Negative or empty values mean
    "no usable position".
    """
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    text = str(value).strip()
    if "," in text:
        # multi-domain GTID lists: rank by the highest sequence
        positions = [parse_position(part) for part in text.split(",")]
        positions = [p for p in positions if p is not None]
        return max(positions) if positions else None
    sequence = text.rsplit("-", 1)[-1] if text.count("-") >= 2 else text
    try:
        number = int(sequence)
    except ValueError:
        logger.warning(f"Unparseable position {value!r}")
        return None
    return number if number >= 0 else None


@dataclass(frozen=True)
class GaleraView:
    """An instance's local view of Galera cluster membership."""

    ordinal: int
    state: str = STATE_UNINITIALIZED
    cluster_uuid: Optional[str] = None
    members: FrozenSet[int] = field(default_factory=frozenset)
    primary_component: bool = False
    seqno: Optional[int] = None

    @property
    def has_prior_membership(self) -> bool:
        return bool(self.cluster_uuid) or self.seqno is not None

    @property
    def synced(self) -> bool:
        return self.state == STATE_SYNCED and self.primary_component

    @property
    def transferring(self) -> bool:
        return self.state in TRANSFER_STATES


@dataclass(frozen=True)
class ReplicationState:
    """An instance's replication role as reported by the agent."""

    ordinal: int
    role: str = ROLE_NONE
    source: Optional[str] = None
    position: Optional[int] = None
    read_only: bool = False


class AgentClient:
    """HTTP client for one instance's agent."""

    def __init__(
        self,
        ordinal: int,
        address: str,
        port: int,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.ordinal = ordinal
        self.address = address
        self.base_url = f"http://{address}:{port}"
        self.timeout = timeout
        self.session = session or requests.Session()

    def __repr__(self) -> str:
        return f"AgentClient({self.ordinal}, {self.base_url})"

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None):
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                json=body,
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
            )
        except requests.Timeout:
            raise TransientError(
                f"Agent {self.address} timed out on {method} {path}", reason="AgentTimeout"
            )
        except requests.RequestException as e:
            raise TransientError(
                f"Agent {self.address} unreachable on {method} {path}: {e}",
                reason="AgentUnreachable",
            )

        if response.status_code >= 400:
            raise TransientError(
                f"Agent {self.address} answered {response.status_code} on {method} {path}",
                reason="AgentError",
            )
        logger.debug(f"{method} {url} -> {response.status_code}")
        if not response.content:
            return {}
        return response.json()

    # -----------------------------
    # Galera
    # -----------------------------

    def query_membership(self) -> GaleraView:
        data = self._request("GET", "/api/galera/state")
        return GaleraView(
            ordinal=self.ordinal,
            state=data.get("state", STATE_UNINITIALIZED),
            cluster_uuid=data.get("clusterUuid") or None,
            members=frozenset(int(m) for m in data.get("members", []) or []),
            primary_component=bool(data.get("primaryComponent", False)),
            seqno=parse_position(data.get("seqno")),
        )

    def query_committed_marker(self) -> Optional[int]:
        """Last committed seqno recovered from the instance's storage."""
        data = self._request("GET", "/api/galera/recovery")
        return parse_position(data.get("seqno"))

    def bootstrap_cluster(self) -> None:
        self._request("POST", "/api/galera/bootstrap")

    def join_cluster(self, seed: str) -> None:
        self._request("POST", "/api/galera/join", {"seed": seed})

    # -----------------------------
    # Replication
    # -----------------------------

    def query_replication(self) -> ReplicationState:
        data = self._request("GET", "/api/replication/status")
        return ReplicationState(
            ordinal=self.ordinal,
            role=data.get("role", ROLE_NONE),
            source=data.get("source") or None,
            position=parse_position(data.get("position")),
            read_only=bool(data.get("readOnly", False)),
        )

    def query_applied_position(self) -> Optional[int]:
        return self.query_replication().position

    def configure_replica(self, source: str, start_position: Optional[int]) -> None:
        self._request(
            "POST",
            "/api/replication/replica",
            {"source": source, "startPosition": start_position},
        )

    def promote(self) -> Optional[int]:
        data = self._request("POST", "/api/replication/promote")
        return parse_position(data.get("position"))

    def set_read_only(self, enabled: bool) -> None:
        self._request("POST", "/api/replication/read-only", {"enabled": enabled})


class AgentClientFactory:
    """Builds agent clients sharing one HTTP session and timeout."""

    def __init__(self, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def __call__(self, ordinal: int, address: str, port: int) -> AgentClient:
        return AgentClient(ordinal, address, port, self.timeout, self.session)
