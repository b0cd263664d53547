"""
Agent runtime adapter - how the manager talks to the agent gateway.

Every call is bounded by RUNTIME_TIMEOUT_SEC and a whole streamed reply by
RUNTIME_STREAM_DEADLINE_SEC; a timeout or connection error reports the runtime
as unavailable, and the dispatcher fails closed on that.
"""

import json
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import requests

from src.core import config
from src.core.dao import Repository, get_repository
from src.core.errors import RuntimeUnavailableError
from src.core.receipts import abort_receipt, append_receipt, create_receipt, finalize_receipt
from util.logging import logger


@dataclass
class Availability:
    available: bool
    status: str  # ok, degraded, unavailable
    latency_ms: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RuntimeAdapter(ABC):
    """Interface to the agent runtime."""

    @abstractmethod
    def send_to_agent(self, agent_id: str, message: str, session_key: str) -> Iterator[str]:
        """Send a message and stream the reply back in chunks."""

    @abstractmethod
    def check_availability(self) -> Availability:
        ...


class HttpRuntimeAdapter(RuntimeAdapter):
    """Runtime gateway reached over HTTP with `requests`."""

    def __init__(self, base_url: Optional[str] = None, timeout_sec: Optional[float] = None,
                 degraded_ms: Optional[int] = None, session: Optional[requests.Session] = None):
        self.base_url = (base_url or config.RUNTIME_URL).rstrip("/")
        self.timeout_sec = timeout_sec if timeout_sec is not None else config.RUNTIME_TIMEOUT_SEC
        self.degraded_ms = degraded_ms if degraded_ms is not None else config.RUNTIME_DEGRADED_MS
        self.session = session or requests.Session()

    def check_availability(self) -> Availability:
        start = time.monotonic()
        try:
            response = self.session.get(f"{self.base_url}/health", timeout=self.timeout_sec)
            latency_ms = int((time.monotonic() - start) * 1000)
            response.raise_for_status()
        except requests.Timeout:
            return Availability(False, "unavailable", error=f"timed out after {self.timeout_sec}s")
        except requests.RequestException as e:
            return Availability(False, "unavailable", error=str(e))

        if latency_ms > self.degraded_ms:
            return Availability(True, "degraded", latency_ms)
        return Availability(True, "ok", latency_ms)

    def send_to_agent(self, agent_id: str, message: str, session_key: str) -> Iterator[str]:
        payload = {"agentId": agent_id, "message": message, "sessionKey": session_key}
        try:
            response = self.session.post(
                f"{self.base_url}/agents/{agent_id}/messages",
                json=payload,
                stream=True,
                timeout=self.timeout_sec,
            )
            response.raise_for_status()
        except requests.Timeout:
            raise RuntimeUnavailableError(f"Runtime timed out after {self.timeout_sec}s",
                                          details={"agent_id": agent_id})
        except requests.RequestException as e:
            raise RuntimeUnavailableError(f"Runtime request failed: {e}",
                                          details={"agent_id": agent_id})

        try:
            for line in response.iter_lines(decode_unicode=True):
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    yield line
                    continue
                if isinstance(event, str):
                    text = event
                elif isinstance(event, dict):
                    text = event.get("text") or event.get("delta") or ""
                else:
                    text = line
                if text:
                    yield str(text)
        except requests.RequestException as e:
            raise RuntimeUnavailableError(f"Runtime stream interrupted: {e}",
                                          details={"agent_id": agent_id})
        finally:
            response.close()


class MockRuntimeAdapter(RuntimeAdapter):
    """In-process runtime for development and tests. Records every send."""

    def __init__(self, available: bool = True, status: str = "ok", reply: str = "ack",
                 fail_agents: Optional[List[str]] = None):
        self.available = available
        self.status = status if available else "unavailable"
        self.reply = reply
        self.fail_agents = set(fail_agents or [])
        self.sent: List[Dict[str, str]] = []

    def check_availability(self) -> Availability:
        if not self.available:
            return Availability(False, "unavailable", error="mock runtime offline")
        return Availability(True, self.status, latency_ms=1)

    def send_to_agent(self, agent_id: str, message: str, session_key: str) -> Iterator[str]:
        if not self.available or agent_id in self.fail_agents:
            raise RuntimeUnavailableError(f"Mock runtime refused agent {agent_id}",
                                          details={"agent_id": agent_id})
        self.sent.append({"agent_id": agent_id, "message": message, "session_key": session_key})
        for word in self.reply.split(" "):
            yield word


_runtime: Optional[RuntimeAdapter] = None
_runtime_lock = threading.Lock()


def get_runtime() -> RuntimeAdapter:
    """Return the process runtime adapter, built from RUNTIME_PROVIDER on first use."""
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            if config.RUNTIME_PROVIDER == "http":
                _runtime = HttpRuntimeAdapter()
            else:
                _runtime = MockRuntimeAdapter()
            logger.info(f"Runtime adapter initialized: {type(_runtime).__name__}")
        return _runtime


def set_runtime(runtime: Optional[RuntimeAdapter]) -> None:
    global _runtime
    with _runtime_lock:
        _runtime = runtime


@dataclass
class InflightRun:
    """A streamed agent run that an operator can still abort."""
    receipt_id: str
    agent_id: str
    session_key: str
    work_order_id: Optional[str] = None
    operation_id: Optional[str] = None
    abort_event: threading.Event = field(default_factory=threading.Event, repr=False)
    started_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "receipt_id": self.receipt_id,
            "agent_id": self.agent_id,
            "session_key": self.session_key,
            "work_order_id": self.work_order_id,
            "operation_id": self.operation_id,
            "started_at": self.started_at.isoformat(),
            "aborting": self.abort_event.is_set(),
        }


_inflight: Dict[str, InflightRun] = {}
_inflight_lock = threading.Lock()


def list_inflight_runs(session_key: Optional[str] = None) -> List[InflightRun]:
    with _inflight_lock:
        runs = list(_inflight.values())
    if session_key is not None:
        runs = [run for run in runs if run.session_key == session_key]
    return runs


def abort_session_runs(session_key: str) -> List[str]:
    """Signal every in-flight run on a session to stop. Returns the receipt ids signalled.

    The run notices between chunks and finalizes its receipt with exit code 130.
    """
    runs = list_inflight_runs(session_key)
    for run in runs:
        run.abort_event.set()
    if runs:
        logger.info(f"Abort requested for session {session_key}: {len(runs)} run(s)")
    return [run.receipt_id for run in runs]


def stream_to_receipt(agent_id: str, message: str, session_key: str,
                      work_order_id: Optional[str] = None, operation_id: Optional[str] = None,
                      abort_event: Optional[threading.Event] = None,
                      runtime: Optional[RuntimeAdapter] = None,
                      repo: Optional[Repository] = None,
                      deadline_sec: Optional[float] = None):
    """Drive one streamed send into a receipt and finalize it.

    Exit code 0 on success, 1 on a runtime error or when the whole stream outlives
    `deadline_sec`, 130 when the run is aborted mid-stream. Any other exception
    finalizes the receipt with exit code 1 and propagates. Returns the finalized receipt.
    """
    repo = repo or get_repository()
    runtime = runtime or get_runtime()
    if deadline_sec is None:
        deadline_sec = config.RUNTIME_STREAM_DEADLINE_SEC
    receipt = create_receipt("agent_run", f"agent:{agent_id}", work_order_id=work_order_id,
                             operation_id=operation_id, repo=repo)
    run = InflightRun(receipt.id, agent_id, session_key, work_order_id, operation_id,
                      abort_event=abort_event or threading.Event())
    with _inflight_lock:
        _inflight[receipt.id] = run

    deadline = time.monotonic() + deadline_sec
    stream = None
    try:
        stream = runtime.send_to_agent(agent_id, message, session_key)
        for chunk in stream:
            if run.abort_event.is_set():
                return abort_receipt(receipt.id, repo=repo)
            if time.monotonic() > deadline:
                raise RuntimeUnavailableError(
                    f"Runtime stream exceeded its {deadline_sec}s deadline",
                    details={"agent_id": agent_id, "receipt_id": receipt.id},
                )
            append_receipt(receipt.id, "stdout", chunk, repo=repo)
    except RuntimeUnavailableError as e:
        append_receipt(receipt.id, "stderr", e.message, repo=repo)
        return finalize_receipt(receipt.id, 1, parsed_json={"code": e.code.value}, repo=repo)
    except Exception as e:
        logger.error(f"Agent run {receipt.id} failed: {type(e).__name__}: {e}")
        append_receipt(receipt.id, "stderr", f"{type(e).__name__}: {e}", repo=repo)
        finalize_receipt(receipt.id, 1, parsed_json={"error": type(e).__name__}, repo=repo)
        raise
    finally:
        with _inflight_lock:
            _inflight.pop(receipt.id, None)
        close = getattr(stream, "close", None)
        if close is not None:
            close()

    if run.abort_event.is_set():
        return abort_receipt(receipt.id, repo=repo)
    return finalize_receipt(receipt.id, 0, repo=repo)
