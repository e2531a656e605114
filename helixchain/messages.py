"""Peer descriptions, network statistics and the wire messages exchanged by nodes."""

from __future__ import annotations

import enum
import json
from dataclasses import asdict, dataclass, field
from typing import Any

from .connection import NetworkError

DEFAULT_CAPABILITIES = frozenset({"consensus", "blockchain", "p2p"})


@dataclass
class PeerInfo:
    """What is known about a remote peer."""

    address: str
    port: int
    last_seen: int = 0
    latency: int = 0
    version: str = ""
    capabilities: set[str] = field(default_factory=set)
    failed_attempts: int = 0
    reputation: float = 1.0
    uptime: int = 0


@dataclass
class NodeInfo:
    """Identity and capabilities of the local node."""

    address: str = "0.0.0.0"
    port: int = 8000
    version: str = "1.0.0"
    capabilities: set[str] = field(default_factory=lambda: set(DEFAULT_CAPABILITIES))
    last_sync: int = 0
    node_id: str = ""
    public_key: str = ""


@dataclass
class NetworkStats:
    """A snapshot of peer and traffic figures."""

    total_peers: int
    connected_peers: int
    bytes_sent: int
    bytes_received: int
    messages_sent: int
    messages_received: int
    uptime: int
    network_health: float


class MessageKind(enum.Enum):
    HANDSHAKE = "Handshake"
    HANDSHAKE_RESPONSE = "HandshakeResponse"
    PING = "Ping"
    PONG = "Pong"
    TRANSACTION = "Transaction"
    BLOCK = "Block"
    BLOCK_REQUEST = "BlockRequest"
    BLOCK_RESPONSE = "BlockResponse"
    PEER_DISCOVERY = "PeerDiscovery"
    SYNC_REQUEST = "SyncRequest"
    SYNC_RESPONSE = "SyncResponse"
    DISCONNECT = "Disconnect"


# Kinds whose payload is a whole object (a transaction or a block) rather than named fields.
_OPAQUE_KINDS = frozenset({MessageKind.TRANSACTION, MessageKind.BLOCK})

# Required and optional payload fields of each structured kind, in wire order.
_FIELDS: dict[MessageKind, tuple[tuple[str, ...], tuple[str, ...]]] = {
    MessageKind.HANDSHAKE: (("version", "node_id", "capabilities"), ()),
    MessageKind.HANDSHAKE_RESPONSE: (("accepted",), ("reason",)),
    MessageKind.PING: (("timestamp", "nonce"), ()),
    MessageKind.PONG: (("timestamp", "nonce"), ()),
    MessageKind.BLOCK_REQUEST: (("hash",), ()),
    MessageKind.BLOCK_RESPONSE: ((), ("block",)),
    MessageKind.PEER_DISCOVERY: (("peers",), ()),
    MessageKind.SYNC_REQUEST: (("from_height",), ("to_height",)),
    MessageKind.SYNC_RESPONSE: (("blocks", "has_more"), ()),
    MessageKind.DISCONNECT: (("reason",), ()),
}


def _decode_error(detail: str) -> NetworkError:
    return NetworkError(f"Message deserialization error: {detail}")


def _peer_to_dict(peer: PeerInfo) -> dict[str, Any]:
    data = asdict(peer)
    data["capabilities"] = sorted(peer.capabilities)
    return data


def _peer_from_dict(data: Any) -> PeerInfo:
    if isinstance(data, PeerInfo):
        return data
    if not isinstance(data, dict):
        raise _decode_error("peer entry must be an object")
    try:
        return PeerInfo(
            address=data["address"],
            port=data["port"],
            last_seen=data["last_seen"],
            latency=data["latency"],
            version=data["version"],
            capabilities=set(data["capabilities"]),
            failed_attempts=data["failed_attempts"],
            reputation=data["reputation"],
            uptime=data["uptime"],
        )
    except KeyError as exc:
        raise _decode_error(f"missing peer field {exc.args[0]!r}") from exc
    except TypeError as exc:
        raise _decode_error(str(exc)) from exc


@dataclass
class NetworkMessage:
    """A message of one kind with its payload fields."""

    kind: MessageKind
    payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.payload, dict):
            raise NetworkError(f"{self.kind.value} payload must be a mapping")
        if self.kind in _OPAQUE_KINDS:
            self.payload = dict(self.payload)
            return
        required, optional = _FIELDS[self.kind]
        missing = [name for name in required if name not in self.payload]
        if missing:
            raise NetworkError(f"{self.kind.value} message is missing {', '.join(missing)}")
        unknown = set(self.payload) - set(required) - set(optional)
        if unknown:
            raise NetworkError(
                f"{self.kind.value} message has unknown fields {', '.join(sorted(unknown))}"
            )
        payload = {name: self.payload[name] for name in required}
        payload.update({name: self.payload.get(name) for name in optional})
        if "capabilities" in payload:
            payload["capabilities"] = set(payload["capabilities"])
        if "peers" in payload:
            payload["peers"] = [_peer_from_dict(peer) for peer in payload["peers"]]
        self.payload = payload

    def to_json(self) -> bytes:
        """Encode as compact JSON: an object keyed by the kind name."""
        if self.kind in _OPAQUE_KINDS:
            body: dict[str, Any] = self.payload
        else:
            required, optional = _FIELDS[self.kind]
            body = {}
            for name in required + optional:
                value = self.payload.get(name)
                if name == "capabilities":
                    value = sorted(value)
                elif name == "peers":
                    value = [_peer_to_dict(peer) for peer in value]
                body[name] = value
        try:
            text = json.dumps({self.kind.value: body}, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise NetworkError(f"Message serialization error: {exc}") from exc
        return text.encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> NetworkMessage:
        """Decode a message; raise NetworkError if it is not a valid message."""
        try:
            obj = json.loads(data)
        except (ValueError, UnicodeDecodeError) as exc:
            raise _decode_error(str(exc)) from exc
        if not isinstance(obj, dict) or len(obj) != 1:
            raise _decode_error("expected an object with exactly one key")
        ((tag, body),) = obj.items()
        try:
            kind = MessageKind(tag)
        except ValueError as exc:
            raise _decode_error(f"unknown message kind {tag!r}") from exc
        if not isinstance(body, dict):
            raise _decode_error(f"{tag} payload must be an object")
        if kind in _OPAQUE_KINDS:
            return cls(kind, body)
        required, optional = _FIELDS[kind]
        missing = [name for name in required if name not in body]
        if missing:
            raise _decode_error(f"{tag} is missing {', '.join(missing)}")
        payload = {name: body[name] for name in required}
        payload.update({name: body.get(name) for name in optional})
        if "capabilities" in payload and not isinstance(payload["capabilities"], list):
            raise _decode_error("capabilities must be a list")
        if "peers" in payload and not isinstance(payload["peers"], list):
            raise _decode_error("peers must be a list")
        try:
            return cls(kind, payload)
        except TypeError as exc:
            raise _decode_error(str(exc)) from exc