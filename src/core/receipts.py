"""
Execution receipts - an append-only record of one command or agent run.

A receipt is open until finalized. Finalizing happens exactly once; appending
to or finalizing a closed receipt is rejected.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from .dao import Repository, get_repository, new_id
from .errors import NotFoundError, ReceiptFinalizedError, ValidationFailed
from .schema import Receipt
from util.logging import logger

MAX_STREAM_BYTES = 32 * 1024
ABORT_EXIT_CODE = 130
STREAMS = ("stdout", "stderr")


def _trim(text: str) -> str:
    """Keep only the last MAX_STREAM_BYTES of a stream."""
    encoded = text.encode("utf-8")
    if len(encoded) <= MAX_STREAM_BYTES:
        return text
    return encoded[-MAX_STREAM_BYTES:].decode("utf-8", errors="ignore")


def _require_open(repo: Repository, receipt_id: str) -> Receipt:
    receipt = repo.get_receipt(receipt_id)
    if receipt is None:
        raise NotFoundError("Receipt", receipt_id)
    if receipt.finalized:
        raise ReceiptFinalizedError(receipt_id)
    return receipt


def create_receipt(kind: str, command_name: str, work_order_id: Optional[str] = None,
                   operation_id: Optional[str] = None,
                   repo: Optional[Repository] = None) -> Receipt:
    repo = repo or get_repository()
    if not kind or not command_name:
        raise ValidationFailed("kind and command_name are required")
    receipt = Receipt(
        id=new_id("rcpt"),
        kind=kind,
        command_name=command_name,
        work_order_id=work_order_id,
        operation_id=operation_id,
    )
    repo.create_receipt(receipt)
    logger.log_receipt(receipt.id, "created")
    return receipt


def append_receipt(receipt_id: str, stream: str, chunk: str,
                   repo: Optional[Repository] = None) -> Receipt:
    repo = repo or get_repository()
    if stream not in STREAMS:
        raise ValidationFailed(f"Invalid stream: {stream}", details={"valid": list(STREAMS)})
    with repo.transaction():
        receipt = _require_open(repo, receipt_id)
        current = getattr(receipt, stream) or ""
        return repo.update_receipt(receipt_id, **{stream: _trim(current + chunk)})


def finalize_receipt(receipt_id: str, exit_code: int, duration_ms: Optional[int] = None,
                     parsed_json: Optional[Dict[str, Any]] = None,
                     repo: Optional[Repository] = None) -> Receipt:
    """Close a receipt. A second call raises ReceiptFinalizedError."""
    repo = repo or get_repository()
    with repo.transaction():
        receipt = _require_open(repo, receipt_id)
        ended_at = datetime.now()
        if duration_ms is None:
            duration_ms = int((ended_at - receipt.started_at).total_seconds() * 1000)
        receipt = repo.update_receipt(
            receipt_id,
            exit_code=exit_code,
            duration_ms=duration_ms,
            parsed_json=parsed_json,
            ended_at=ended_at,
        )
        succeeded = exit_code == 0
        repo.add_activity(
            type="receipt.succeeded" if succeeded else "receipt.failed",
            actor="system",
            entity_type="receipt",
            entity_id=receipt_id,
            summary=f"{receipt.command_name} exited with {exit_code}",
            payload={
                "work_order_id": receipt.work_order_id,
                "operation_id": receipt.operation_id,
                "exit_code": exit_code,
                "duration_ms": duration_ms,
            },
            category="receipt",
            risk_level="safe" if succeeded else "caution",
        )
    logger.log_receipt(receipt_id, "finalized", exit_code)
    return receipt


def abort_receipt(receipt_id: str, reason: str = "aborted",
                  repo: Optional[Repository] = None) -> Receipt:
    """Finalize an interrupted run with a non-zero exit code."""
    repo = repo or get_repository()
    with repo.transaction():
        receipt = _require_open(repo, receipt_id)
        repo.update_receipt(receipt_id, stderr=_trim((receipt.stderr or "") + f"\n[{reason}]"))
        return finalize_receipt(receipt_id, ABORT_EXIT_CODE, repo=repo)
