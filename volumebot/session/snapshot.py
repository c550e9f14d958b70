"""
Session snapshot persistence.

A snapshot holds what is needed to rebuild a session without generating
new wallets: wallet identities, token, routing data and creation time.
Files are written atomically (tmp + replace).
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from volumebot.risk.errors import InvalidConfiguration
from volumebot.session.models import Session, WalletRef

if TYPE_CHECKING:
    from volumebot.execution.interfaces import WalletProvider

log = logging.getLogger("volumebot")

SNAPSHOT_VERSION = 1


@dataclass
class WalletRecord:
    number: int
    address: str
    secret_ref: Optional[str] = None
    created_at: float = 0.0

    @classmethod
    def from_ref(cls, ref: WalletRef) -> "WalletRecord":
        return cls(ref.number, ref.address, ref.secret_ref, ref.created_at)

    def to_ref(self, sign_handle: Any = None) -> WalletRef:
        return WalletRef(
            number=self.number,
            address=self.address,
            sign_handle=sign_handle,
            secret_ref=self.secret_ref,
            created_at=self.created_at,
        )


@dataclass
class SessionSnapshot:
    session_id: str
    owner: str
    token: str
    strategy: str
    admin_wallet: WalletRecord
    trading_wallets: List[WalletRecord]
    routing_data: Any = None
    token_name: Optional[str] = None
    token_symbol: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    version: int = SNAPSHOT_VERSION

    @classmethod
    def from_session(cls, session: Session) -> "SessionSnapshot":
        return cls(
            session_id=session.id,
            owner=session.owner,
            token=session.token,
            strategy=session.strategy.value,
            admin_wallet=WalletRecord.from_ref(session.admin_wallet),
            trading_wallets=[WalletRecord.from_ref(w) for w in session.trading_wallets],
            routing_data=session.routing_data,
            token_name=session.token_name,
            token_symbol=session.token_symbol,
            created_at=session.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "session_id": self.session_id,
            "owner": self.owner,
            "token": self.token,
            "token_name": self.token_name,
            "token_symbol": self.token_symbol,
            "strategy": self.strategy,
            "created_at": self.created_at,
            "routing_data": self.routing_data,
            "admin_wallet": self.admin_wallet.__dict__.copy(),
            "trading_wallets": [w.__dict__.copy() for w in self.trading_wallets],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionSnapshot":
        try:
            admin = WalletRecord(**data["admin_wallet"])
            wallets = sorted((WalletRecord(**w) for w in data["trading_wallets"]), key=lambda w: w.number)
            return cls(
                session_id=data["session_id"],
                owner=data["owner"],
                token=data["token"],
                strategy=data["strategy"],
                admin_wallet=admin,
                trading_wallets=wallets,
                routing_data=data.get("routing_data"),
                token_name=data.get("token_name"),
                token_symbol=data.get("token_symbol"),
                created_at=float(data.get("created_at", 0.0)),
                version=int(data.get("version", SNAPSHOT_VERSION)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidConfiguration(f"malformed session snapshot: {exc}") from exc

    def restore_wallets(self, provider: Optional[WalletProvider] = None) -> Tuple[WalletRef, List[WalletRef]]:
        """
        Rebuild wallet references. With a provider, signing handles are
        re-derived from each secret and the derived address must match the
        recorded one.

        Raises:
            InvalidConfiguration: address mismatch or missing secret
        """
        def _restore(record: WalletRecord) -> WalletRef:
            if provider is None:
                return record.to_ref()
            if not record.secret_ref:
                raise InvalidConfiguration(f"wallet {record.number} has no secret reference")
            handle = provider.import_wallet(record.secret_ref)
            if handle.address.lower() != record.address.lower():
                raise InvalidConfiguration(
                    f"wallet {record.number}: derived address {handle.address} != recorded {record.address}"
                )
            return record.to_ref(handle.sign_handle)

        return _restore(self.admin_wallet), [_restore(w) for w in self.trading_wallets]


class SnapshotStore:
    def __init__(self, state_dir: str) -> None:
        self.dir = Path(state_dir)
        self.dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, session_id: str) -> Path:
        safe = session_id.replace(":", "_").replace("/", "_")
        return self.dir / f"session_{safe}.json"

    def save(self, snapshot: SessionSnapshot) -> Path:
        path = self.path_for(snapshot.session_id)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(snapshot.to_dict(), indent=2))
        tmp.replace(path)
        return path

    def load(self, path: str | Path) -> SessionSnapshot:
        path = Path(path)
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            log.error(json.dumps({"event": "snapshot_import_error", "path": str(path), "err": str(exc)}))
            raise InvalidConfiguration(f"cannot read snapshot {path}: {exc}") from exc
        return SessionSnapshot.from_dict(data)


class AtomicSnapshotStore:
    """Serializes snapshot IO with an asyncio.Lock and runs it in an executor."""

    def __init__(self, state_dir: str) -> None:
        self._store = SnapshotStore(state_dir)
        self._lock = asyncio.Lock()

    @property
    def dir(self) -> Path:
        return self._store.dir

    async def save(self, snapshot: SessionSnapshot) -> Path:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, lambda: self._store.save(snapshot))

    async def load(self, path: str | Path) -> SessionSnapshot:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, lambda: self._store.load(path))
