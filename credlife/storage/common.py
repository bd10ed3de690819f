"""Common storage utilities shared between the memory, postgres and redis backends.

Document and payload conversion lives here so every tier persists credentials
with the same field names, and the in-memory document store evaluates filters
with the same semantics the Postgres store compiles to SQL.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
)

from credlife.storage.models import OTP, OTPPurpose, Session

Document = Dict[str, Any]
Filter = Mapping[str, Any]
Patch = Mapping[str, Mapping[str, Any]]
SortSpec = Sequence[Tuple[str, int]]

ASCENDING = 1
DESCENDING = -1

OTP_COLLECTION = "otps"
SESSION_COLLECTION = "sessions"


# ============================================================================
# BACKEND CONTRACTS
# ============================================================================


class DocumentCollection(Protocol):
    def create(self, doc: Document) -> Document: ...

    def find_one(self, flt: Filter) -> Optional[Document]: ...

    def find(self, flt: Filter, sort: Optional[SortSpec] = None) -> List[Document]: ...

    def update(self, flt: Filter, patch: Patch) -> int: ...

    def delete(self, flt: Filter) -> int: ...


class DocumentStore(Protocol):
    def collection(self, name: str) -> DocumentCollection: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


class EphemeralStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def set_many(self, values: Mapping[str, str], ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, *keys: str) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def incr(self, key: str) -> int: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> Set[str]: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def scan_keys(self, pattern: str) -> List[str]: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


# ============================================================================
# TIMESTAMPS
# ============================================================================


def as_utc(value: datetime) -> datetime:
    """Normalize a timestamp to aware UTC; naive values are assumed to be UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value)))


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat()


# ============================================================================
# DOCUMENT CONVERSION (durable tier)
# ============================================================================


def otp_to_document(otp: OTP) -> Document:
    return {
        "id": otp.id,
        "email": otp.email,
        "purpose": OTPPurpose(otp.purpose).value,
        "code": otp.code,
        "attempts": otp.attempts,
        "expires_at": otp.expires_at,
        "created_at": otp.created_at,
        "updated_at": otp.updated_at,
    }


def otp_from_document(doc: Mapping[str, Any]) -> OTP:
    return OTP(
        id=str(doc["id"]),
        email=doc["email"],
        purpose=OTPPurpose(doc["purpose"]),
        code=doc["code"],
        attempts=int(doc.get("attempts") or 0),
        expires_at=_parse_timestamp(doc["expires_at"]),
        created_at=_parse_timestamp(doc["created_at"]),
        updated_at=_parse_timestamp(doc.get("updated_at") or doc["created_at"]),
    )


def session_to_document(session: Session) -> Document:
    return {
        "id": session.id,
        "account_id": session.account_id,
        "token_hash": session.token_hash,
        "is_active": session.is_active,
        "expires_at": session.expires_at,
        "created_at": session.created_at,
        "last_used_at": session.last_used_at,
        "user_agent": session.user_agent,
        "ip_address": session.ip_address,
    }


def session_from_document(doc: Mapping[str, Any]) -> Session:
    return Session(
        id=str(doc["id"]),
        account_id=str(doc["account_id"]),
        token_hash=doc["token_hash"],
        is_active=bool(doc.get("is_active", False)),
        expires_at=_parse_timestamp(doc.get("expires_at")),
        created_at=_parse_timestamp(doc.get("created_at")),
        last_used_at=_parse_timestamp(doc.get("last_used_at")),
        user_agent=doc.get("user_agent"),
        ip_address=doc.get("ip_address"),
    )


# ============================================================================
# PAYLOAD CONVERSION (ephemeral tier)
# ============================================================================


def otp_to_payload(otp: OTP) -> str:
    doc = otp_to_document(otp)
    for key in ("expires_at", "created_at", "updated_at"):
        doc[key] = _format_timestamp(doc[key])
    return json.dumps(doc)


def otp_from_payload(raw: str) -> OTP:
    """Decode a cached OTP payload.

    Raises ValueError for corrupt payloads so callers can distinguish them from
    a missing key.
    """

    try:
        data = json.loads(raw)
        return otp_from_document(data)
    except (json.JSONDecodeError, TypeError, KeyError) as exc:
        raise ValueError("corrupt OTP payload") from exc


def session_to_payload(session: Session) -> str:
    doc = session_to_document(session)
    for key in ("expires_at", "created_at", "last_used_at"):
        doc[key] = _format_timestamp(doc[key])
    return json.dumps(doc)


def session_from_payload(raw: str) -> Session:
    try:
        data = json.loads(raw)
        return session_from_document(data)
    except (json.JSONDecodeError, TypeError, KeyError) as exc:
        raise ValueError("corrupt session payload") from exc


# ============================================================================
# FILTER EVALUATION (memory backend)
# ============================================================================

_COMPARATORS = {
    "$lte": lambda left, right: left is not None and left <= right,
    "$lt": lambda left, right: left is not None and left < right,
    "$gte": lambda left, right: left is not None and left >= right,
    "$gt": lambda left, right: left is not None and left > right,
    "$ne": lambda left, right: left != right,
}


def normalize_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, OTPPurpose):
        return value.value
    return value


def matches_filter(doc: Mapping[str, Any], flt: Filter) -> bool:
    """Evaluate an equality/``$lte``/``$or`` filter against a document."""

    for field_name, expected in flt.items():
        if field_name == "$or":
            if not any(matches_filter(doc, clause) for clause in expected):
                return False
            continue
        actual = normalize_value(doc.get(field_name))
        if isinstance(expected, Mapping):
            for op, operand in expected.items():
                compare = _COMPARATORS.get(op)
                if compare is None:
                    raise ValueError(f"unsupported filter operator: {op}")
                if not compare(actual, normalize_value(operand)):
                    return False
        elif actual != normalize_value(expected):
            return False
    return True


def apply_patch(doc: Document, patch: Patch) -> Document:
    """Apply ``$set``/``$inc`` update operators to a document in place."""

    for op, fields in patch.items():
        if op == "$set":
            for name, value in fields.items():
                doc[name] = normalize_value(value)
        elif op == "$inc":
            for name, amount in fields.items():
                doc[name] = int(doc.get(name) or 0) + int(amount)
        else:
            raise ValueError(f"unsupported update operator: {op}")
    return doc


def sort_documents(docs: Iterable[Document], sort: Optional[SortSpec]) -> List[Document]:
    ordered = list(docs)
    if not sort:
        return ordered
    # Apply keys in reverse so the first key dominates
    for field_name, direction in reversed(list(sort)):
        present = [d for d in ordered if d.get(field_name) is not None]
        missing = [d for d in ordered if d.get(field_name) is None]
        present.sort(key=lambda d: d[field_name], reverse=direction == DESCENDING)
        ordered = present + missing
    return ordered
