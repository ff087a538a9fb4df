"""
EVREG Observability

Structured logging on the standard `logging` tree under the `evreg` logger,
plus the hash-chained audit trail of authorization decisions.

    get_logger("evidence", RegistryLayer.STORE).info(
        "Evidence submitted", operation="submit_evidence", evidence_id=x
    )

produces, with the json format,

    {"timestamp": ..., "level": "info", "logger": "evreg.store.evidence",
     "message": "Evidence submitted", "layer": "store",
     "operation": "submit_evidence", "context": {"evidence_id": ...}}

Keyword arguments other than `operation` and `duration_ms` land in
`context`. The correlation id of the current context is added when set.
"""

from __future__ import annotations

import contextvars
import hashlib
import json
import logging
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, List, MutableMapping, Optional, Tuple, TypeVar

from evreg.core import canonical_json_bytes

ROOT_LOGGER_NAME = "evreg"

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "evreg_correlation_id", default=""
)


class RegistryLayer(Enum):
    """Component a log record comes from; second segment of the logger name."""
    STORE = "store"
    EXTRA_INFO = "extra_info"
    AUTHORIZATION = "authorization"
    SNAPSHOT = "snapshot"
    CLI = "cli"


# ════════════════════════════════════════════════════════════════════════════
# HANDLERS
# ════════════════════════════════════════════════════════════════════════════


class StructuredHandler(logging.StreamHandler):
    """Stream handler writing one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": correlation_id_var.get(),
            "layer": getattr(record, "layer", ""),
            "operation": getattr(record, "operation", ""),
            "duration_ms": getattr(record, "duration_ms", None),
            "context": getattr(record, "context", None),
        }
        if record.exc_info:
            entry["exception"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(
            {k: v for k, v in entry.items() if v is not None and v != "" and v != {}},
            default=str,
        )


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> logging.Logger:
    """Install the single managed handler on the `evreg` logger.

    A handler installed by an earlier call is replaced, so repeated CLI runs
    in one process do not duplicate output.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level.upper())
    for old in [h for h in root.handlers if getattr(h, "_evreg_managed", False)]:
        root.removeHandler(old)

    if fmt == "json":
        handler: logging.Handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler._evreg_managed = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    return root


# ════════════════════════════════════════════════════════════════════════════
# COMPONENT LOGGERS
# ════════════════════════════════════════════════════════════════════════════


class RegistryLogger(logging.LoggerAdapter):
    """Logger adapter that moves keyword arguments into structured fields."""

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel")

    def __init__(self, name: str, layer: RegistryLayer):
        super().__init__(logging.getLogger(f"{ROOT_LOGGER_NAME}.{layer.value}.{name}"), {})
        self.layer = layer

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        passthrough = {key: kwargs.pop(key) for key in self._PASSTHROUGH if key in kwargs}
        passthrough["extra"] = {
            "layer": self.layer.value,
            "operation": kwargs.pop("operation", ""),
            "duration_ms": kwargs.pop("duration_ms", None),
            "context": dict(kwargs),
        }
        return msg, passthrough

    def operation(self, name: str, duration_ms: float, success: bool = True) -> None:
        """Record how long `name` took; failures are logged at warning."""
        if success:
            self.debug(f"Operation {name} completed", operation=name, duration_ms=duration_ms)
        else:
            self.warning(f"Operation {name} failed", operation=name, duration_ms=duration_ms)


def get_logger(name: str, layer: RegistryLayer) -> RegistryLogger:
    return RegistryLogger(name, layer)


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Correlation id of the current context, minting one on first use."""
    cid = correlation_id_var.get()
    if not cid:
        cid = f"corr-{uuid.uuid4().hex[:12]}"
        correlation_id_var.set(cid)
    return cid


T = TypeVar("T")


def timed_operation(logger: RegistryLogger, name: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator logging the duration of every call, and whether it raised."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            started = time.perf_counter()
            success = False
            try:
                result = func(*args, **kwargs)
                success = True
                return result
            finally:
                logger.operation(name, (time.perf_counter() - started) * 1000, success)
        return wrapper
    return decorator


# ════════════════════════════════════════════════════════════════════════════
# AUDIT TRAIL
# ════════════════════════════════════════════════════════════════════════════


GENESIS_HASH = "0" * 64


@dataclass
class AuditEntry:
    """One authorization decision, chained to the entry before it."""
    sequence: int
    recorded_at: str
    actor: str
    action: str
    evidence_id: str
    outcome: str  # granted | denied
    correlation_id: str
    previous_hash: str
    entry_hash: str = ""

    def compute_hash(self) -> str:
        body = asdict(self)
        del body["entry_hash"]
        return hashlib.sha256(canonical_json_bytes(body)).hexdigest()


class AuditTrail:
    """
    Append-only, hash-chained record of authorization decisions.

    Editing any past entry changes its hash and breaks the link from its
    successor; `first_broken` reports where.
    """

    def __init__(self, logger: RegistryLogger):
        self._logger = logger
        self._entries: List[AuditEntry] = []
        self._lock = threading.Lock()

    def record(self, actor: str, action: str, evidence_id: str, outcome: str) -> AuditEntry:
        with self._lock:
            entry = AuditEntry(
                sequence=len(self._entries) + 1,
                recorded_at=datetime.now(timezone.utc).isoformat(),
                actor=actor,
                action=action,
                evidence_id=evidence_id,
                outcome=outcome,
                correlation_id=get_correlation_id(),
                previous_hash=self._entries[-1].entry_hash if self._entries else GENESIS_HASH,
            )
            entry.entry_hash = entry.compute_hash()
            self._entries.append(entry)

        self._logger.info(
            f"Audit {action} {outcome}",
            operation="audit",
            actor=actor,
            evidence_id=evidence_id,
            entry_hash=entry.entry_hash,
        )
        return entry

    def first_broken(self) -> Optional[int]:
        """Index of the first entry failing the chain check, or None."""
        with self._lock:
            previous = GENESIS_HASH
            for index, entry in enumerate(self._entries):
                if entry.previous_hash != previous or entry.compute_hash() != entry.entry_hash:
                    return index
                previous = entry.entry_hash
            return None

    def verify(self) -> bool:
        return self.first_broken() is None

    @property
    def entries(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._entries)
