"""Approval gate for MANUAL runbook steps.

When the orchestrator reaches a MANUAL step it asks the gate for a pending
approval and pauses the execution. The worker thread is released; nothing
blocks while the approval is open.

A decision (approve, reject, or expiry by the background sweep) is written
with a single conditional UPDATE, so only the first decision wins, and then
the resume callback is signalled so an execution worker re-claims the
execution.

Invariant: at most one PENDING approval per (execution_id, step_index),
enforced by a partial unique index in the database.

Usage:
    from Conductor.Core.approvals import ApprovalGate

    gate = ApprovalGate(resume_callback=pool.resume)
    result = gate.approve(approval_id, approved_by="alice")
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

import Conductor.Core.database as db
import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.exceptions import PersistenceError
from Conductor.Core.metrics import (
    record_approval_decision,
    update_pending_approval_count,
)
from Conductor.Core.runbook_parser import ManualStep
from Conductor.Core.utils.datetime_helpers import (
    isoformat,
    now as get_now,
    parse_datetime,
)

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

ResumeCallback = Callable[[int], Any]


class ApprovalStatus(str, Enum):
    """Status of a pending approval."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


@dataclass
class PendingApproval:
    """An approval requested by a MANUAL step."""

    approval_id: int
    execution_id: int
    step_index: int
    step_name: str
    status: ApprovalStatus
    required_approvers: list[str] = field(default_factory=list)
    request_note: Optional[str] = None
    responded_by: Optional[str] = None
    response_note: Optional[str] = None
    requested_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None

    def is_expired(self, at: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and (at or get_now()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "approval_id": self.approval_id,
            "execution_id": self.execution_id,
            "step_index": self.step_index,
            "step_name": self.step_name,
            "status": self.status.value,
            "required_approvers": self.required_approvers,
            "request_note": self.request_note,
            "responded_by": self.responded_by,
            "response_note": self.response_note,
            "requested_at": isoformat(self.requested_at),
            "expires_at": isoformat(self.expires_at),
            "responded_at": isoformat(self.responded_at),
        }


@dataclass
class ApprovalResult:
    """Result of an approval action."""

    success: bool
    message: str
    approval: Optional[PendingApproval] = None
    execution_id: Optional[int] = None


def _parse_approval(data: dict[str, Any]) -> PendingApproval:
    approvers = data.get("required_approvers") or []
    if isinstance(approvers, str):
        approvers = json.loads(approvers)
    return PendingApproval(
        approval_id=data["approval_id"],
        execution_id=data["execution_id"],
        step_index=data["step_index"],
        step_name=data.get("step_name") or "",
        status=ApprovalStatus(data["status"]),
        required_approvers=list(approvers),
        request_note=data.get("request_note"),
        responded_by=data.get("responded_by"),
        response_note=data.get("response_note"),
        requested_at=parse_datetime(data.get("requested_at")),
        expires_at=parse_datetime(data.get("expires_at")),
        responded_at=parse_datetime(data.get("responded_at")),
    )


def _rows(result: Optional[str], action: str) -> list[dict[str, Any]]:
    if result is None:
        raise PersistenceError(f"Database error while trying to {action}")
    return json.loads(str(result))


class ApprovalGate:
    """Creates, decides and expires pending approvals."""

    def __init__(self, resume_callback: Optional[ResumeCallback] = None):
        self._resume_callback = resume_callback

    def set_resume_callback(self, callback: Optional[ResumeCallback]) -> None:
        self._resume_callback = callback

    def _signal_resume(self, execution_id: int) -> None:
        if self._resume_callback is None:
            logger.log(
                level=10,
                msg=f"No resume callback; execution {execution_id} will be "
                "resumed by the worker sweep",
            )
            return
        try:
            self._resume_callback(execution_id)
        except Exception as e:
            # The worker sweep picks the execution up later
            logger.log(
                level=30, msg=f"Failed to signal resume of execution {execution_id}: {e}"
            )

    # ========================================================================
    # Requests
    # ========================================================================

    def request(
        self, execution_id: int, step: ManualStep, step_index: int
    ) -> PendingApproval:
        """
        Open a PENDING approval for a MANUAL step.

        If one is already open for (execution_id, step_index) it is returned
        instead of creating a second.
        """
        expires_at = None
        if step.expires_after is not None:
            expires_at = get_now() + timedelta(seconds=step.expires_after)

        rows = _rows(
            db.query_db(
                """
                INSERT INTO conductor.approvals
                (execution_id, step_index, step_name, status, required_approvers,
                 request_note, expires_at)
                VALUES (%s, %s, %s, 'PENDING', %s, %s, %s)
                ON CONFLICT (execution_id, step_index) WHERE status = 'PENDING'
                DO NOTHING
                RETURNING *
                """,
                (
                    execution_id,
                    step_index,
                    step.name,
                    db.to_json(list(step.approvers)),
                    step.instructions or None,
                    expires_at,
                ),
            ),
            f"request approval for execution {execution_id}",
        )
        if rows:
            approval = _parse_approval(rows[0])
            logger.log(
                level=20,
                msg=f"Approval {approval.approval_id} requested for execution "
                f"{execution_id} step {step_index} ('{step.name}')",
            )
            return approval

        existing = self.get_open_approval(execution_id, step_index)
        if existing is None:
            raise PersistenceError(
                f"Approval for execution {execution_id} step {step_index} "
                "neither created nor found"
            )
        logger.log(
            level=10,
            msg=f"Approval {existing.approval_id} already open for execution "
            f"{execution_id} step {step_index}",
        )
        return existing

    # ========================================================================
    # Decisions
    # ========================================================================

    def _decide(
        self,
        approval_id: int,
        status: ApprovalStatus,
        responded_by: Optional[str],
        note: Optional[str],
    ) -> Optional[PendingApproval]:
        """Atomically close a PENDING, unexpired approval."""
        rows = _rows(
            db.query_db(
                """
                UPDATE conductor.approvals
                SET status = %s, responded_by = %s, response_note = %s,
                    responded_at = NOW()
                WHERE approval_id = %s AND status = 'PENDING'
                  AND (expires_at IS NULL OR expires_at > NOW())
                RETURNING *
                """,
                (status.value, responded_by, note, approval_id),
            ),
            f"decide approval {approval_id}",
        )
        return _parse_approval(rows[0]) if rows else None

    def _expire_one(self, approval: PendingApproval) -> ApprovalResult:
        rows = _rows(
            db.query_db(
                """
                UPDATE conductor.approvals
                SET status = 'EXPIRED', responded_at = NOW()
                WHERE approval_id = %s AND status = 'PENDING'
                RETURNING *
                """,
                (approval.approval_id,),
            ),
            f"expire approval {approval.approval_id}",
        )
        if rows:
            record_approval_decision(ApprovalStatus.EXPIRED.value)
            self._signal_resume(approval.execution_id)
        return ApprovalResult(
            success=False,
            message="Approval has expired",
            approval=_parse_approval(rows[0]) if rows else approval,
            execution_id=approval.execution_id,
        )

    def _check_decidable(
        self, approval_id: int
    ) -> tuple[Optional[PendingApproval], Optional[ApprovalResult]]:
        approval = self.get_approval(approval_id)
        if approval is None:
            return None, ApprovalResult(
                success=False, message=f"Approval {approval_id} not found"
            )
        if approval.status != ApprovalStatus.PENDING:
            return approval, ApprovalResult(
                success=False,
                message=f"Approval already {approval.status.value}",
                approval=approval,
                execution_id=approval.execution_id,
            )
        if approval.is_expired():
            return approval, self._expire_one(approval)
        return approval, None

    def approve(
        self, approval_id: int, approved_by: str, comment: Optional[str] = None
    ) -> ApprovalResult:
        """
        Approve a pending approval and signal the execution to resume.

        An approval past its expiry is moved to EXPIRED instead and the
        result reports failure.
        """
        approval, failure = self._check_decidable(approval_id)
        if failure is not None:
            return failure
        if approval is None:
            return ApprovalResult(success=False, message=f"Approval {approval_id} not found")

        if approval.required_approvers and approved_by not in approval.required_approvers:
            return ApprovalResult(
                success=False,
                message=f"{approved_by} is not an allowed approver",
                approval=approval,
                execution_id=approval.execution_id,
            )

        decided = self._decide(approval_id, ApprovalStatus.APPROVED, approved_by, comment)
        if decided is None:
            # Lost a race with another decision or the expiry sweep
            return ApprovalResult(
                success=False,
                message="Approval is no longer pending",
                approval=self.get_approval(approval_id),
                execution_id=approval.execution_id,
            )

        record_approval_decision(ApprovalStatus.APPROVED.value)
        logger.log(
            level=20,
            msg=f"Execution {decided.execution_id} step {decided.step_index} "
            f"approved by {approved_by}",
        )
        self._signal_resume(decided.execution_id)
        return ApprovalResult(
            success=True,
            message=f"Execution {decided.execution_id} approved",
            approval=decided,
            execution_id=decided.execution_id,
        )

    def reject(self, approval_id: int, rejected_by: str, reason: str) -> ApprovalResult:
        """Reject a pending approval; the step's failure policy then applies."""
        if not reason or not reason.strip():
            return ApprovalResult(success=False, message="A rejection reason is required")

        approval, failure = self._check_decidable(approval_id)
        if failure is not None:
            return failure
        if approval is None:
            return ApprovalResult(success=False, message=f"Approval {approval_id} not found")

        decided = self._decide(approval_id, ApprovalStatus.REJECTED, rejected_by, reason)
        if decided is None:
            return ApprovalResult(
                success=False,
                message="Approval is no longer pending",
                approval=self.get_approval(approval_id),
                execution_id=approval.execution_id,
            )

        record_approval_decision(ApprovalStatus.REJECTED.value)
        logger.log(
            level=20,
            msg=f"Execution {decided.execution_id} step {decided.step_index} "
            f"rejected by {rejected_by}: {reason}",
        )
        self._signal_resume(decided.execution_id)
        return ApprovalResult(
            success=True,
            message=f"Execution {decided.execution_id} rejected",
            approval=decided,
            execution_id=decided.execution_id,
        )

    def close_for_execution(
        self, execution_id: int, note: str = "Execution cancelled"
    ) -> int:
        """
        Expire the open approvals of an execution that ended without them.

        A later approve or reject then reports the approval as already
        EXPIRED instead of deciding a step that will never run. No resume is
        signalled.

        Returns:
            Number of approvals closed
        """
        rows = _rows(
            db.query_db(
                """
                UPDATE conductor.approvals
                SET status = 'EXPIRED', response_note = %s, responded_at = NOW()
                WHERE execution_id = %s AND status = 'PENDING'
                RETURNING approval_id
                """,
                (note, execution_id),
            ),
            f"close approvals of execution {execution_id}",
        )
        if rows:
            logger.log(
                level=20,
                msg=f"Closed {len(rows)} open approval(s) of execution "
                f"{execution_id}: {note}",
            )
            update_pending_approval_count(self.count_pending())
        return len(rows)

    def expire_due(self) -> int:
        """
        Expire PENDING approvals whose expires_at has passed.

        Returns:
            Number of approvals expired
        """
        rows = _rows(
            db.query_db(
                """
                UPDATE conductor.approvals
                SET status = 'EXPIRED', responded_at = NOW()
                WHERE status = 'PENDING' AND expires_at IS NOT NULL
                  AND expires_at <= NOW()
                RETURNING approval_id, execution_id, step_index
                """
            ),
            "expire due approvals",
        )

        for row in rows:
            record_approval_decision(ApprovalStatus.EXPIRED.value)
            logger.log(
                level=20,
                msg=f"Approval {row['approval_id']} for execution "
                f"{row['execution_id']} step {row['step_index']} expired",
            )
            self._signal_resume(row["execution_id"])

        update_pending_approval_count(self.count_pending())
        return len(rows)

    # ========================================================================
    # Lookups
    # ========================================================================

    def get_approval(self, approval_id: int) -> Optional[PendingApproval]:
        rows = _rows(
            db.query_db(
                "SELECT * FROM conductor.approvals WHERE approval_id = %s",
                (approval_id,),
            ),
            f"load approval {approval_id}",
        )
        return _parse_approval(rows[0]) if rows else None

    def get_open_approval(
        self, execution_id: int, step_index: int
    ) -> Optional[PendingApproval]:
        rows = _rows(
            db.query_db(
                "SELECT * FROM conductor.approvals "
                "WHERE execution_id = %s AND step_index = %s AND status = 'PENDING'",
                (execution_id, step_index),
            ),
            f"load open approval for execution {execution_id}",
        )
        return _parse_approval(rows[0]) if rows else None

    def get_decision(
        self, execution_id: int, step_index: int
    ) -> Optional[PendingApproval]:
        """Most recent approval for a step, whatever its status."""
        rows = _rows(
            db.query_db(
                "SELECT * FROM conductor.approvals "
                "WHERE execution_id = %s AND step_index = %s "
                "ORDER BY approval_id DESC LIMIT 1",
                (execution_id, step_index),
            ),
            f"load approval decision for execution {execution_id}",
        )
        return _parse_approval(rows[0]) if rows else None

    def list_pending(self, execution_id: Optional[int] = None) -> list[PendingApproval]:
        query = "SELECT * FROM conductor.approvals WHERE status = 'PENDING'"
        params: tuple = ()
        if execution_id is not None:
            query += " AND execution_id = %s"
            params = (execution_id,)
        query += " ORDER BY requested_at, approval_id"
        return [
            _parse_approval(r)
            for r in _rows(db.query_db(query, params), "list pending approvals")
        ]

    def count_pending(self) -> int:
        rows = _rows(
            db.query_db(
                "SELECT COUNT(*) AS count FROM conductor.approvals WHERE status = 'PENDING'"
            ),
            "count pending approvals",
        )
        return int(rows[0]["count"]) if rows else 0
