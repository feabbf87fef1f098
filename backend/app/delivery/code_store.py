"""
code_store.py — Persistence for issued verification codes and send counts.

Codes are keyed by (normalised destination, purpose); a new code for the
same key replaces the old one. Verification writes are conditional on the
code hash the caller loaded, so a code replaced or consumed by another
worker is never spent twice:

    spend_attempt(key, hash)   decrement only while the hash still matches
    delete(key, hash)          True only for the caller that removed it

Send timestamps feed the per-destination hourly and daily caps. Rows
older than a day are pruned on every new send.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.delivery.contacts import mask_contact
from backend.app.delivery.models import DeliveryChannel, as_utc
from backend.app.delivery.orm import CodeSendRow, IssuedCodeRow

SEND_RETENTION = timedelta(days=1)


@dataclass
class IssuedCode:
    destination: str
    purpose: str
    channel: DeliveryChannel
    code_hash: str
    expires_at: datetime
    attempts_left: int
    request_id: str = ""
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> Tuple[str, str]:
        return (self.destination, self.purpose)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "destination": mask_contact(self.destination),
            "purpose": self.purpose,
            "channel": self.channel.value,
            "request_id": self.request_id,
            "expires_at": self.expires_at.isoformat(),
            "attempts_left": self.attempts_left,
            "issued_at": self.issued_at.isoformat(),
        }


class CodeStore(ABC):

    @abstractmethod
    async def get(self, destination: str, purpose: str) -> Optional[IssuedCode]: ...

    @abstractmethod
    async def put(self, issued: IssuedCode) -> None:
        """Insert or replace the code for its key."""

    @abstractmethod
    async def set_request_id(self, destination: str, purpose: str, code_hash: str, request_id: str) -> None: ...

    @abstractmethod
    async def spend_attempt(self, destination: str, purpose: str, code_hash: str) -> int:
        """Attempts left after one wrong guess; -1 if the code is gone or replaced."""

    @abstractmethod
    async def delete(self, destination: str, purpose: str, code_hash: str) -> bool: ...

    @abstractmethod
    async def record_send(self, destination: str, sent_at: datetime) -> None: ...

    @abstractmethod
    async def sends_since(self, destination: str, since: datetime) -> List[datetime]:
        """Send times for the destination, oldest first."""


class InMemoryCodeStore(CodeStore):
    """Dict-backed store for a single process. Records are copied in and out."""

    def __init__(self) -> None:
        self._codes: Dict[Tuple[str, str], IssuedCode] = {}
        self._sends: Dict[str, List[datetime]] = {}

    def _matching(self, destination: str, purpose: str, code_hash: str) -> Optional[IssuedCode]:
        issued = self._codes.get((destination, purpose))
        return issued if issued is not None and issued.code_hash == code_hash else None

    async def get(self, destination: str, purpose: str) -> Optional[IssuedCode]:
        issued = self._codes.get((destination, purpose))
        return replace(issued) if issued else None

    async def put(self, issued: IssuedCode) -> None:
        self._codes[issued.key] = replace(issued)

    async def set_request_id(self, destination: str, purpose: str, code_hash: str, request_id: str) -> None:
        issued = self._matching(destination, purpose, code_hash)
        if issued is not None:
            issued.request_id = request_id

    async def spend_attempt(self, destination: str, purpose: str, code_hash: str) -> int:
        issued = self._matching(destination, purpose, code_hash)
        if issued is None or issued.attempts_left <= 0:
            return -1
        issued.attempts_left -= 1
        return issued.attempts_left

    async def delete(self, destination: str, purpose: str, code_hash: str) -> bool:
        if self._matching(destination, purpose, code_hash) is None:
            return False
        del self._codes[(destination, purpose)]
        return True

    async def record_send(self, destination: str, sent_at: datetime) -> None:
        cutoff = sent_at - SEND_RETENTION
        kept = [s for s in self._sends.get(destination, []) if s > cutoff]
        kept.append(sent_at)
        self._sends[destination] = kept

    async def sends_since(self, destination: str, since: datetime) -> List[datetime]:
        return sorted(s for s in self._sends.get(destination, []) if s >= since)


def _from_row(row: IssuedCodeRow) -> IssuedCode:
    return IssuedCode(
        destination=row.destination,
        purpose=row.purpose,
        channel=DeliveryChannel(row.channel),
        code_hash=row.code_hash,
        expires_at=as_utc(row.expires_at),
        attempts_left=row.attempts_left,
        request_id=row.request_id or "",
        issued_at=as_utc(row.issued_at),
    )


class SqlCodeStore(CodeStore):
    """SQLAlchemy async backend, shared by every worker."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _where(destination: str, purpose: str, code_hash: str):
        t = IssuedCodeRow
        return (t.destination == destination, t.purpose == purpose, t.code_hash == code_hash)

    async def get(self, destination: str, purpose: str) -> Optional[IssuedCode]:
        async with self._session_factory() as session:
            row = await session.get(IssuedCodeRow, (destination, purpose))
            return _from_row(row) if row else None

    async def put(self, issued: IssuedCode) -> None:
        async with self._session_factory() as session:
            await session.merge(IssuedCodeRow(
                destination=issued.destination,
                purpose=issued.purpose,
                channel=issued.channel.value,
                code_hash=issued.code_hash,
                expires_at=issued.expires_at,
                attempts_left=issued.attempts_left,
                request_id=issued.request_id,
                issued_at=issued.issued_at,
            ))
            await session.commit()

    async def set_request_id(self, destination: str, purpose: str, code_hash: str, request_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(IssuedCodeRow)
                .where(*self._where(destination, purpose, code_hash))
                .values(request_id=request_id)
            )
            await session.commit()

    async def spend_attempt(self, destination: str, purpose: str, code_hash: str) -> int:
        t = IssuedCodeRow
        async with self._session_factory() as session:
            result = await session.execute(
                update(t)
                .where(*self._where(destination, purpose, code_hash), t.attempts_left > 0)
                .values(attempts_left=t.attempts_left - 1)
            )
            if result.rowcount == 0:
                await session.rollback()
                return -1
            left = await session.scalar(
                select(t.attempts_left).where(*self._where(destination, purpose, code_hash))
            )
            await session.commit()
        return left if left is not None else -1

    async def delete(self, destination: str, purpose: str, code_hash: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(IssuedCodeRow).where(*self._where(destination, purpose, code_hash))
            )
            removed = result.rowcount == 1
            await session.commit()
        return removed

    async def record_send(self, destination: str, sent_at: datetime) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(CodeSendRow).where(
                    CodeSendRow.destination == destination,
                    CodeSendRow.sent_at < sent_at - SEND_RETENTION,
                )
            )
            session.add(CodeSendRow(destination=destination, sent_at=sent_at))
            await session.commit()

    async def sends_since(self, destination: str, since: datetime) -> List[datetime]:
        stmt = (
            select(CodeSendRow.sent_at)
            .where(CodeSendRow.destination == destination, CodeSendRow.sent_at >= since)
            .order_by(CodeSendRow.sent_at)
        )
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()
        return [as_utc(s) for s in rows]
