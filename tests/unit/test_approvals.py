"""Unit tests for the approval gate."""
import json
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest


def _approval_row(approval_id=1, status="PENDING", expires_at=None, **extra):
    row = {
        "approval_id": approval_id,
        "execution_id": 10,
        "step_index": 2,
        "step_name": "Confirm restart",
        "status": status,
        "required_approvers": [],
        "request_note": None,
        "responded_by": None,
        "response_note": None,
        "requested_at": "2026-10-16T09:00:00+00:00",
        "expires_at": expires_at,
        "responded_at": None,
    }
    row.update(extra)
    return row


def _future():
    from Conductor.Core.utils.datetime_helpers import now

    return (now() + timedelta(hours=1)).isoformat()


def _past():
    from Conductor.Core.utils.datetime_helpers import now

    return (now() - timedelta(minutes=1)).isoformat()


@pytest.fixture
def manual_step():
    from Conductor.Core.runbook_parser import parse_step

    return parse_step({
        "id": "confirm",
        "name": "Confirm restart",
        "type": "MANUAL",
        "instructions": "Check the dashboards first",
        "approvers": ["alice", "bob"],
        "expires_after": "30m",
    })


class TestPendingApproval:
    """Tests for the PendingApproval dataclass."""

    def test_is_expired(self):
        """Test expiry against a given instant."""
        from Conductor.Core.approvals import ApprovalStatus, PendingApproval
        from Conductor.Core.utils.datetime_helpers import now

        current = now()
        approval = PendingApproval(
            approval_id=1, execution_id=1, step_index=0, step_name="x",
            status=ApprovalStatus.PENDING, expires_at=current,
        )

        assert approval.is_expired(current) is True
        assert approval.is_expired(current - timedelta(seconds=1)) is False

    def test_never_expires_without_deadline(self):
        """Test approvals without expires_at never expire."""
        from Conductor.Core.approvals import ApprovalStatus, PendingApproval

        approval = PendingApproval(
            approval_id=1, execution_id=1, step_index=0, step_name="x",
            status=ApprovalStatus.PENDING,
        )

        assert approval.is_expired() is False

    def test_to_dict(self):
        """Test to_dict serializes status and timestamps."""
        from Conductor.Core.approvals import _parse_approval

        data = _parse_approval(_approval_row()).to_dict()

        assert data["status"] == "PENDING"
        assert data["requested_at"].startswith("2026-10-16T09:00:00")
        assert data["expires_at"] is None


class TestRequest:
    """Tests for ApprovalGate.request."""

    @patch("Conductor.Core.approvals.db")
    def test_request_inserts_pending(self, mock_db, manual_step):
        """Test a new approval is inserted with the step's approvers and expiry."""
        from Conductor.Core.approvals import ApprovalGate, ApprovalStatus

        mock_db.to_json.side_effect = json.dumps
        mock_db.query_db.return_value = json.dumps([
            _approval_row(required_approvers=["alice", "bob"], expires_at=_future())
        ])

        approval = ApprovalGate().request(10, manual_step, 2)

        assert approval.status == ApprovalStatus.PENDING
        assert approval.required_approvers == ["alice", "bob"]
        params = mock_db.query_db.call_args.args[1]
        assert params[:3] == (10, 2, "Confirm restart")
        assert json.loads(params[3]) == ["alice", "bob"]
        assert params[5] is not None

    @patch("Conductor.Core.approvals.db")
    def test_request_returns_existing_open_approval(self, mock_db, manual_step):
        """Test a duplicate request returns the already-open approval."""
        from Conductor.Core.approvals import ApprovalGate

        mock_db.to_json.side_effect = json.dumps
        mock_db.query_db.side_effect = [
            json.dumps([]),
            json.dumps([_approval_row(approval_id=5)]),
        ]

        approval = ApprovalGate().request(10, manual_step, 2)

        assert approval.approval_id == 5
        assert mock_db.query_db.call_count == 2

    @patch("Conductor.Core.approvals.db")
    def test_request_database_error(self, mock_db, manual_step):
        """Test a failed insert raises PersistenceError."""
        from Conductor.Core.approvals import ApprovalGate
        from Conductor.Core.exceptions import PersistenceError

        mock_db.query_db.return_value = None

        with pytest.raises(PersistenceError):
            ApprovalGate().request(10, manual_step, 2)


class TestDecisions:
    """Tests for approve/reject."""

    @patch("Conductor.Core.approvals.db")
    def test_approve_signals_resume(self, mock_db):
        """Test approving closes the approval and resumes the execution."""
        from Conductor.Core.approvals import ApprovalGate, ApprovalStatus

        mock_db.query_db.side_effect = [
            json.dumps([_approval_row(expires_at=_future())]),
            json.dumps([_approval_row(status="APPROVED", responded_by="alice")]),
        ]
        resume = MagicMock()

        result = ApprovalGate(resume_callback=resume).approve(1, "alice", "looks good")

        assert result.success is True
        assert result.approval.status == ApprovalStatus.APPROVED
        assert result.execution_id == 10
        resume.assert_called_once_with(10)
        decide_params = mock_db.query_db.call_args_list[1].args[1]
        assert decide_params == ("APPROVED", "alice", "looks good", 1)

    @patch("Conductor.Core.approvals.db")
    def test_approve_not_found(self, mock_db):
        """Test approving an unknown approval fails."""
        from Conductor.Core.approvals import ApprovalGate

        mock_db.query_db.return_value = json.dumps([])

        result = ApprovalGate().approve(99, "alice")

        assert result.success is False
        assert "not found" in result.message

    @patch("Conductor.Core.approvals.db")
    def test_approve_already_decided(self, mock_db):
        """Test a second decision is refused."""
        from Conductor.Core.approvals import ApprovalGate

        mock_db.query_db.return_value = json.dumps([_approval_row(status="REJECTED")])
        resume = MagicMock()

        result = ApprovalGate(resume_callback=resume).approve(1, "alice")

        assert result.success is False
        assert result.message == "Approval already REJECTED"
        resume.assert_not_called()

    @patch("Conductor.Core.approvals.db")
    def test_approve_expired_marks_expired(self, mock_db):
        """Test approving past the deadline expires it instead."""
        from Conductor.Core.approvals import ApprovalGate, ApprovalStatus

        mock_db.query_db.side_effect = [
            json.dumps([_approval_row(expires_at=_past())]),
            json.dumps([_approval_row(status="EXPIRED", expires_at=_past())]),
        ]
        resume = MagicMock()

        result = ApprovalGate(resume_callback=resume).approve(1, "alice")

        assert result.success is False
        assert result.message == "Approval has expired"
        assert result.approval.status == ApprovalStatus.EXPIRED
        resume.assert_called_once_with(10)

    @patch("Conductor.Core.approvals.db")
    def test_approve_by_unlisted_approver(self, mock_db):
        """Test only listed approvers may approve when a list is set."""
        from Conductor.Core.approvals import ApprovalGate

        mock_db.query_db.return_value = json.dumps([
            _approval_row(required_approvers=["alice"])
        ])

        result = ApprovalGate().approve(1, "mallory")

        assert result.success is False
        assert "not an allowed approver" in result.message
        assert mock_db.query_db.call_count == 1

    @patch("Conductor.Core.approvals.db")
    def test_approve_loses_race(self, mock_db):
        """Test a decision that loses the conditional update reports failure."""
        from Conductor.Core.approvals import ApprovalGate

        mock_db.query_db.side_effect = [
            json.dumps([_approval_row()]),
            json.dumps([]),
            json.dumps([_approval_row(status="REJECTED")]),
        ]
        resume = MagicMock()

        result = ApprovalGate(resume_callback=resume).approve(1, "alice")

        assert result.success is False
        assert result.message == "Approval is no longer pending"
        resume.assert_not_called()

    def test_reject_requires_reason(self):
        """Test rejecting without a reason is refused."""
        from Conductor.Core.approvals import ApprovalGate

        result = ApprovalGate().reject(1, "alice", "   ")

        assert result.success is False
        assert "reason" in result.message

    @patch("Conductor.Core.approvals.db")
    def test_reject_signals_resume(self, mock_db):
        """Test rejecting closes the approval and resumes the execution."""
        from Conductor.Core.approvals import ApprovalGate, ApprovalStatus

        mock_db.query_db.side_effect = [
            json.dumps([_approval_row()]),
            json.dumps([_approval_row(status="REJECTED", response_note="not now")]),
        ]
        resume = MagicMock()

        result = ApprovalGate(resume_callback=resume).reject(1, "bob", "not now")

        assert result.success is True
        assert result.approval.status == ApprovalStatus.REJECTED
        resume.assert_called_once_with(10)

    @patch("Conductor.Core.approvals.db")
    def test_resume_callback_failure_is_not_fatal(self, mock_db):
        """Test a failing resume callback does not undo the decision."""
        from Conductor.Core.approvals import ApprovalGate

        mock_db.query_db.side_effect = [
            json.dumps([_approval_row()]),
            json.dumps([_approval_row(status="APPROVED")]),
        ]
        resume = MagicMock(side_effect=RuntimeError("pool stopped"))

        result = ApprovalGate(resume_callback=resume).approve(1, "alice")

        assert result.success is True


class TestExpiry:
    """Tests for the expiry sweep and lookups."""

    @patch("Conductor.Core.approvals.db")
    def test_expire_due(self, mock_db):
        """Test each expired approval resumes its execution."""
        from Conductor.Core.approvals import ApprovalGate

        mock_db.query_db.side_effect = [
            json.dumps([
                {"approval_id": 1, "execution_id": 10, "step_index": 2},
                {"approval_id": 2, "execution_id": 11, "step_index": 0},
            ]),
            json.dumps([{"count": 3}]),
        ]
        resume = MagicMock()

        expired = ApprovalGate(resume_callback=resume).expire_due()

        assert expired == 2
        assert [c.args[0] for c in resume.call_args_list] == [10, 11]

    @patch("Conductor.Core.approvals.db")
    def test_expire_due_nothing_to_do(self, mock_db):
        """Test the sweep is a no-op when nothing is due."""
        from Conductor.Core.approvals import ApprovalGate

        mock_db.query_db.side_effect = [json.dumps([]), json.dumps([{"count": 0}])]

        assert ApprovalGate().expire_due() == 0

    @patch("Conductor.Core.approvals.db")
    def test_get_decision_returns_latest(self, mock_db):
        """Test get_decision parses the newest approval for the step."""
        from Conductor.Core.approvals import ApprovalGate, ApprovalStatus

        mock_db.query_db.return_value = json.dumps([
            _approval_row(approval_id=7, status="APPROVED", responded_by="alice")
        ])

        decision = ApprovalGate().get_decision(10, 2)

        assert decision.approval_id == 7
        assert decision.status == ApprovalStatus.APPROVED
        assert "ORDER BY approval_id DESC" in mock_db.query_db.call_args.args[0]

    @patch("Conductor.Core.approvals.db")
    def test_list_pending_filters_by_execution(self, mock_db):
        """Test list_pending passes the execution filter."""
        from Conductor.Core.approvals import ApprovalGate

        mock_db.query_db.return_value = json.dumps([_approval_row()])

        pending = ApprovalGate().list_pending(execution_id=10)

        assert len(pending) == 1
        assert mock_db.query_db.call_args.args[1] == (10,)


class TestCloseForExecution:
    """Tests for closing the approvals of a cancelled execution."""

    @patch("Conductor.Core.approvals.db")
    def test_open_approvals_are_expired_with_a_note(self, mock_db):
        """Test pending approvals of the execution move to EXPIRED without a resume."""
        from Conductor.Core.approvals import ApprovalGate

        mock_db.query_db.side_effect = [
            json.dumps([{"approval_id": 4}]),
            json.dumps([{"count": 0}]),
        ]
        resume = MagicMock()

        closed = ApprovalGate(resume_callback=resume).close_for_execution(10)

        assert closed == 1
        sql, params = mock_db.query_db.call_args_list[0].args
        assert "SET status = 'EXPIRED'" in sql
        assert "status = 'PENDING'" in sql
        assert params == ("Execution cancelled", 10)
        resume.assert_not_called()

    @patch("Conductor.Core.approvals.db")
    def test_nothing_open(self, mock_db):
        """Test an execution without open approvals skips the pending recount."""
        from Conductor.Core.approvals import ApprovalGate

        mock_db.query_db.return_value = json.dumps([])

        assert ApprovalGate().close_for_execution(10) == 0
        assert mock_db.query_db.call_count == 1

    @patch("Conductor.Core.approvals.db")
    def test_approve_after_close_reports_expired(self, mock_db):
        """Test approving a closed approval fails instead of deciding it."""
        from Conductor.Core.approvals import ApprovalGate

        mock_db.query_db.return_value = json.dumps([
            _approval_row(status="EXPIRED", response_note="Execution cancelled")
        ])
        resume = MagicMock()

        result = ApprovalGate(resume_callback=resume).approve(1, "alice")

        assert result.success is False
        assert result.message == "Approval already EXPIRED"
        assert mock_db.query_db.call_count == 1
        resume.assert_not_called()

    @patch("Conductor.Core.approvals.db")
    def test_database_error(self, mock_db):
        """Test a failed update raises PersistenceError."""
        from Conductor.Core.approvals import ApprovalGate
        from Conductor.Core.exceptions import PersistenceError

        mock_db.query_db.return_value = None

        with pytest.raises(PersistenceError):
            ApprovalGate().close_for_execution(10)
