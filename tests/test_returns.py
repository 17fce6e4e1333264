"""
tests/test_returns.py
======================
Return Decision Tests — ReturnGuard

Test categories:
    1. Score-only decisions at filing time
    2. Image verdict + risk band combination
    3. Human overrides (reason required, idempotent, terminal conflicts)
    4. Degraded fallback when image analysis is unavailable
    5. Audit commit rule (failed audit write → no mutation, filing and
       re-score written as one batch)
    6. Concurrent decisions on shared entities

All tests are offline; the classifier is a static or mocked backend.
"""

import os
import sys
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# Ensure project root is on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from returnguard.audit.log import AuditLog
from returnguard.engine import ReturnGuardEngine
from returnguard.errors import (
    AnalysisUnavailable,
    AuditWriteError,
    InvalidTransition,
    UnknownEntity,
)
from returnguard.imaging.classifier import ClassifierOutput, StaticImageClassifier
from returnguard.imaging.fuser import fuse
from returnguard.models import Customer, CustomerStatus, ReturnRecord, ReturnRequest, ReturnStatus
from returnguard.policy.store import Policy
from returnguard.returns.engine import ReturnDecisionEngine

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
PHOTO = b"\xff\xd8\xff\xe0" + b"\x00" * 64

CLEAN_ITEM = ClassifierOutput("leather bag", 0.95, 0.97)
DAMAGED_ITEM = ClassifierOutput("torn denim jacket", 0.9, 0.95)


class FlakySink:
    """Audit sink that can be switched to fail every write."""

    def __init__(self):
        self.fail = False
        self.written = []

    def write(self, entries):
        if self.fail:
            raise OSError("disk full")
        self.written.extend(entries)


class RescoreFailingSink(FlakySink):
    """Audit sink that rejects any batch carrying a customer re-score."""

    def __init__(self):
        super().__init__()
        self.allow_rescore = False

    def write(self, entries):
        if not self.allow_rescore and any(e.action == "risk_score_changed" for e in entries):
            raise OSError("disk full")
        super().write(entries)


def _engine(output: ClassifierOutput = CLEAN_ITEM, **kwargs) -> ReturnGuardEngine:
    kwargs.setdefault("classifier", StaticImageClassifier(output))
    return ReturnGuardEngine(clock=lambda: NOW, **kwargs)


def _customer(engine: ReturnGuardEngine, score: int, customer_id: str = "C-1") -> Customer:
    return engine.register_customer(customer_id, name="Test", risk_score=score)


def _medium_customer(engine: ReturnGuardEngine) -> Customer:
    """Five recent returns: medium band before and after one more filing."""
    history = [
        ReturnRecord(f"OLD-{n}", 100.0, NOW - timedelta(days=2), "size") for n in range(5)
    ]
    return engine.register_customer("C-1", name="Test", returns=history)


def _actions(engine: ReturnGuardEngine, return_id: str) -> list[str]:
    return [entry.action for entry in engine.get_audit_trail("return", return_id)]


# ===================================================================
# 1. Score-Only Decisions
# ===================================================================

class TestScoreOnlyDecisions(unittest.TestCase):

    def test_high_band_without_verdict_goes_to_review(self):
        """Score 84 with autoBlock at 90 and no image: human review."""
        engine = _engine()
        _customer(engine, 84)
        ret = engine.submit_return("C-1", "Wrong size", 120.0)
        self.assertIs(ret.status, ReturnStatus.UNDER_REVIEW)
        self.assertEqual(ret.decided_by, "decision_engine")

    def test_low_band_without_verdict_approved(self):
        engine = _engine()
        _customer(engine, 10)
        ret = engine.submit_return("C-1", "Changed my mind", 40.0)
        self.assertIs(ret.status, ReturnStatus.APPROVED)

    def test_auto_block_band_rejected_at_filing(self):
        engine = _engine()
        _customer(engine, 92)
        ret = engine.submit_return("C-1", "Damaged", 300.0, images=["front.jpg"])
        self.assertIs(ret.status, ReturnStatus.REJECTED)
        self.assertEqual(_actions(engine, ret.return_id), ["return_filed", "return_decided"])

    def test_policy_change_moves_the_band(self):
        engine = _engine()
        _customer(engine, 84)
        engine.update_policy({"autoBlockThreshold": 80}, actor="alice")
        ret = engine.submit_return("C-1", "Wrong size", 120.0)
        self.assertIs(ret.status, ReturnStatus.REJECTED)
        decided = engine.get_audit_trail("return", ret.return_id)[-1]
        self.assertEqual(decided.policy_version, 2)

    def test_images_keep_return_pending(self):
        engine = _engine()
        _customer(engine, 10)
        ret = engine.submit_return("C-1", "Damaged", 80.0, images=["front.jpg"])
        self.assertIs(ret.status, ReturnStatus.PENDING)
        self.assertIsNone(ret.decided_by)

    def test_images_ignored_when_analysis_disabled(self):
        engine = _engine()
        _customer(engine, 10)
        engine.update_policy({"enableImageAnalysis": False}, actor="alice")
        ret = engine.submit_return("C-1", "Damaged", 80.0, images=["front.jpg"])
        self.assertIs(ret.status, ReturnStatus.APPROVED)

    def test_filing_rescores_customer(self):
        engine = _engine()
        customer = engine.register_customer("C-1")
        self.assertEqual(customer.risk_score, 0)
        engine.submit_return("C-1", "Too big", 3000.0)
        self.assertEqual(customer.risk_score, 23)
        self.assertEqual(len(customer.returns), 1)

    def test_imported_auto_block_score_rejects_every_filing(self):
        """Seeded 92: re-scoring after a filing must not drop the customer out of auto-block."""
        engine = _engine()
        customer = _customer(engine, 92)

        first = engine.submit_return("C-1", "Damaged", 300.0)
        second = engine.submit_return("C-1", "Damaged", 300.0)

        self.assertIs(first.status, ReturnStatus.REJECTED)
        self.assertIs(second.status, ReturnStatus.REJECTED)
        self.assertEqual(customer.risk_score, 92)
        self.assertIs(customer.status, CustomerStatus.BLOCKED)
        self.assertEqual(customer.blocked_until, NOW + timedelta(days=30))
        self.assertEqual(
            [e.action for e in engine.get_audit_trail("customer", "C-1")],
            ["customer_registered"],
        )

    def test_invalid_input(self):
        engine = _engine()
        _customer(engine, 10)
        with self.assertRaises(ValueError):
            engine.submit_return("C-1", "Too big", 0)
        with self.assertRaises(ValueError):
            engine.submit_return("C-1", "  ", 10.0)
        with self.assertRaises(UnknownEntity):
            engine.submit_return("C-404", "Too big", 10.0)


# ===================================================================
# 2. Verdict + Band
# ===================================================================

class TestVerdictDecisions(unittest.TestCase):

    def test_low_risk_clean_photo_auto_approved(self):
        engine = _engine(CLEAN_ITEM)
        _customer(engine, 10)
        ret = engine.submit_return("C-1", "Did not fit", 80.0, images=["front.jpg"])

        verdict = engine.submit_image_for_analysis(ret.return_id, PHOTO)

        self.assertEqual(verdict.recommendation.value, "approve")
        self.assertIs(ret.status, ReturnStatus.APPROVED)
        self.assertIs(ret.verdict, verdict)
        self.assertEqual(
            _actions(engine, ret.return_id),
            ["return_filed", "image_verdict_recorded", "return_decided"],
        )

    def test_damaged_photo_rejected(self):
        engine = _engine(DAMAGED_ITEM)
        _customer(engine, 10)
        ret = engine.submit_return("C-1", "Did not fit", 80.0, images=["front.jpg"])
        engine.submit_image_for_analysis(ret.return_id, PHOTO)
        self.assertIs(ret.status, ReturnStatus.REJECTED)

    def test_medium_band_clean_photo_still_reviewed(self):
        engine = _engine(CLEAN_ITEM)
        _medium_customer(engine)
        ret = engine.submit_return("C-1", "Did not fit", 80.0, images=["front.jpg"])
        engine.submit_image_for_analysis(ret.return_id, PHOTO)
        self.assertIs(ret.status, ReturnStatus.UNDER_REVIEW)

    def test_auto_block_overrides_approve_verdict(self):
        """Score 92 is rejected even when the image verdict says approve."""
        audit = AuditLog()
        decisions = ReturnDecisionEngine(audit)
        policy = Policy()
        customer = Customer("C-1", risk_score=92)
        request = ReturnRequest("RET-1", "C-1", "Wrong size", 50.0, NOW, images=["a.jpg"])
        verdict = fuse(CLEAN_ITEM, policy, now=NOW)

        decisions.evaluate(request, customer, policy, verdict=verdict, now=NOW)

        self.assertIs(request.status, ReturnStatus.REJECTED)
        self.assertIs(request.verdict, verdict)

    def test_verdict_on_terminal_return_refused(self):
        engine = _engine()
        _customer(engine, 10)
        ret = engine.submit_return("C-1", "Did not fit", 80.0)
        with self.assertRaises(InvalidTransition):
            engine.submit_image_for_analysis(ret.return_id, PHOTO)
        self.assertEqual(_actions(engine, ret.return_id)[-1], "transition_rejected")

    def test_re_analysis_of_reviewed_return_keeps_history(self):
        engine = _engine(CLEAN_ITEM)
        _medium_customer(engine)
        ret = engine.submit_return("C-1", "Did not fit", 80.0, images=["a.jpg", "b.jpg"])
        first = engine.submit_image_for_analysis(ret.return_id, PHOTO)
        second = engine.submit_image_for_analysis(ret.return_id, PHOTO)
        self.assertIs(ret.status, ReturnStatus.UNDER_REVIEW)
        self.assertEqual(ret.verdicts, [first, second])
        self.assertIs(ret.verdict, second)

    def test_decide_pending_return_without_photo(self):
        engine = _engine()
        _customer(engine, 10)
        ret = engine.submit_return("C-1", "Did not fit", 80.0, images=["a.jpg"])
        engine.decide_return(ret.return_id)
        self.assertIs(ret.status, ReturnStatus.APPROVED)


# ===================================================================
# 3. Human Overrides
# ===================================================================

class TestOverrides(unittest.TestCase):

    def setUp(self):
        self.engine = _engine()
        _customer(self.engine, 84)
        self.ret = self.engine.submit_return("C-1", "Wrong size", 120.0)

    def test_override_requires_reason(self):
        with self.assertRaises(ValueError):
            self.engine.decide_return(self.ret.return_id, "approved")
        with self.assertRaises(ValueError):
            self.engine.decide_return(self.ret.return_id, "approved", "   ")
        self.assertIs(self.ret.status, ReturnStatus.UNDER_REVIEW)

    def test_override_decision_must_be_terminal(self):
        with self.assertRaises(ValueError):
            self.engine.decide_return(self.ret.return_id, "pending", "because")
        with self.assertRaises(ValueError):
            self.engine.decide_return(self.ret.return_id, "maybe", "because")

    def test_override_applied_and_audited(self):
        ret = self.engine.decide_return(
            self.ret.return_id, "approved", "Receipt verified", actor="bob"
        )
        self.assertIs(ret.status, ReturnStatus.APPROVED)
        self.assertEqual(ret.decided_by, "bob")
        entry = self.engine.get_audit_trail("return", ret.return_id)[-1]
        self.assertEqual(entry.action, "return_overridden")
        self.assertEqual(entry.actor, "bob")
        self.assertEqual(entry.reason, "Receipt verified")

    def test_same_override_twice_is_idempotent(self):
        self.engine.decide_return(self.ret.return_id, "approved", "Receipt verified")
        self.engine.decide_return(self.ret.return_id, "approved", "Receipt verified")
        self.assertEqual(
            _actions(self.engine, self.ret.return_id).count("return_overridden"), 1
        )

    def test_conflicting_override_on_terminal_return(self):
        self.engine.decide_return(self.ret.return_id, "approved", "Receipt verified")
        with self.assertRaises(InvalidTransition) as ctx:
            self.engine.decide_return(self.ret.return_id, "rejected", "Changed my mind")
        self.assertEqual(ctx.exception.current, "approved")
        self.assertEqual(ctx.exception.requested, "rejected")
        self.assertIs(self.ret.status, ReturnStatus.APPROVED)
        self.assertEqual(_actions(self.engine, self.ret.return_id)[-1], "transition_rejected")

    def test_automatic_decide_of_reviewed_return_refused(self):
        with self.assertRaises(InvalidTransition):
            self.engine.decide_return(self.ret.return_id)

    def test_override_pending_return(self):
        ret = self.engine.submit_return("C-1", "Damaged", 80.0, images=["a.jpg"])
        self.engine.decide_return(ret.return_id, "rejected", "Item never shipped")
        self.assertIs(ret.status, ReturnStatus.REJECTED)

    def test_unknown_return(self):
        with self.assertRaises(UnknownEntity):
            self.engine.decide_return("RET-404", "approved", "x")


# ===================================================================
# 4. Degraded Fallback
# ===================================================================

class TestDegradedFallback(unittest.TestCase):

    def _failing_engine(self) -> ReturnGuardEngine:
        classifier = MagicMock()
        classifier.classify.side_effect = AnalysisUnavailable("classifier timed out")
        return _engine(classifier=classifier)

    def test_medium_band_goes_to_review_degraded(self):
        engine = self._failing_engine()
        _medium_customer(engine)
        ret = engine.submit_return("C-1", "Did not fit", 80.0, images=["a.jpg"])

        with self.assertRaises(AnalysisUnavailable) as ctx:
            engine.submit_image_for_analysis(ret.return_id, PHOTO)

        self.assertIs(ctx.exception.return_request, ret)
        self.assertIs(ret.status, ReturnStatus.UNDER_REVIEW)
        self.assertTrue(ret.degraded)
        self.assertIsNone(ret.verdict)
        decided = engine.get_audit_trail("return", ret.return_id)[-1]
        self.assertIn("degraded", decided.reason)

    def test_low_band_approved_degraded(self):
        engine = self._failing_engine()
        _customer(engine, 10)
        ret = engine.submit_return("C-1", "Did not fit", 80.0, images=["a.jpg"])
        with self.assertRaises(AnalysisUnavailable):
            engine.submit_image_for_analysis(ret.return_id, PHOTO)
        self.assertIs(ret.status, ReturnStatus.APPROVED)
        self.assertTrue(ret.degraded)

    def test_unexpected_classifier_error_is_degraded(self):
        classifier = MagicMock()
        classifier.classify.side_effect = RuntimeError("segfault in model server")
        engine = _engine(classifier=classifier)
        _customer(engine, 10)
        ret = engine.submit_return("C-1", "Did not fit", 80.0, images=["a.jpg"])
        with self.assertRaises(AnalysisUnavailable):
            engine.submit_image_for_analysis(ret.return_id, PHOTO)
        self.assertTrue(ret.degraded)

    def test_no_classifier_configured(self):
        engine = ReturnGuardEngine(clock=lambda: NOW)
        _customer(engine, 10)
        ret = engine.submit_return("C-1", "Did not fit", 80.0, images=["a.jpg"])
        with self.assertRaises(AnalysisUnavailable):
            engine.submit_image_for_analysis(ret.return_id, PHOTO)
        self.assertIs(ret.status, ReturnStatus.APPROVED)

    def test_reviewed_return_only_gets_a_note(self):
        engine = self._failing_engine()
        _customer(engine, 84)
        ret = engine.submit_return("C-1", "Did not fit", 80.0)
        with self.assertRaises(AnalysisUnavailable):
            engine.submit_image_for_analysis(ret.return_id, PHOTO)
        self.assertIs(ret.status, ReturnStatus.UNDER_REVIEW)
        self.assertEqual(_actions(engine, ret.return_id)[-1], "image_analysis_unavailable")


# ===================================================================
# 5. Audit Commit Rule
# ===================================================================

class TestAuditCommitRule(unittest.TestCase):

    def test_failed_audit_aborts_filing(self):
        sink = FlakySink()
        engine = _engine(audit_sink=sink)
        customer = _customer(engine, 10)
        sink.fail = True

        with self.assertRaises(AuditWriteError):
            engine.submit_return("C-1", "Did not fit", 80.0)

        self.assertEqual(len(engine.returns), 0)
        self.assertEqual(customer.returns, [])

    def test_failed_rescore_write_aborts_whole_filing(self):
        sink = RescoreFailingSink()
        engine = _engine(audit_sink=sink)
        customer = engine.register_customer("C-1", name="Test")
        logged = len(engine.audit)

        with self.assertRaises(AuditWriteError):
            engine.submit_return("C-1", "Did not fit", 80.0)

        self.assertEqual(len(engine.returns), 0)
        self.assertEqual(customer.returns, [])
        self.assertEqual(customer.risk_score, 0)
        self.assertEqual(len(engine.audit), logged)
        self.assertNotIn("return_filed", [e.action for e in sink.written])

    def test_retry_after_failed_rescore_files_once(self):
        sink = RescoreFailingSink()
        engine = _engine(audit_sink=sink)
        customer = engine.register_customer("C-1", name="Test")
        with self.assertRaises(AuditWriteError):
            engine.submit_return("C-1", "Did not fit", 80.0)

        sink.allow_rescore = True
        ret = engine.submit_return("C-1", "Did not fit", 80.0)

        self.assertEqual([r.return_id for r in engine.returns], [ret.return_id])
        self.assertEqual([r.return_id for r in customer.returns], [ret.return_id])
        self.assertEqual(customer.risk_score, 8)

    def test_failed_audit_aborts_override(self):
        sink = FlakySink()
        engine = _engine(audit_sink=sink)
        _customer(engine, 84)
        ret = engine.submit_return("C-1", "Wrong size", 120.0)
        logged = len(engine.audit)
        sink.fail = True

        with self.assertRaises(AuditWriteError):
            engine.decide_return(ret.return_id, "approved", "Receipt verified")

        self.assertIs(ret.status, ReturnStatus.UNDER_REVIEW)
        self.assertEqual(len(engine.audit), logged)

    def test_failed_audit_aborts_verdict(self):
        sink = FlakySink()
        engine = _engine(audit_sink=sink)
        _customer(engine, 10)
        ret = engine.submit_return("C-1", "Did not fit", 80.0, images=["a.jpg"])
        sink.fail = True

        with self.assertRaises(AuditWriteError):
            engine.submit_image_for_analysis(ret.return_id, PHOTO)

        self.assertIs(ret.status, ReturnStatus.PENDING)
        self.assertEqual(ret.verdicts, [])

    def test_entries_reach_sink(self):
        sink = FlakySink()
        engine = _engine(audit_sink=sink)
        _customer(engine, 10)
        engine.submit_return("C-1", "Did not fit", 80.0)
        self.assertEqual(len(sink.written), len(engine.audit))


# ===================================================================
# 6. Concurrency
# ===================================================================

class TestConcurrency(unittest.TestCase):

    def test_parallel_filings_for_one_customer(self):
        engine = _engine()
        customer = _customer(engine, 84)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda n: engine.submit_return("C-1", f"Return {n}", 50.0 + n),
                range(20),
            ))

        self.assertEqual(len(engine.returns), 20)
        self.assertEqual(len(customer.returns), 20)
        self.assertEqual(len({ret.return_id for ret in results}), 20)
        for ret in results:
            self.assertTrue(ret.is_terminal or ret.status is ReturnStatus.UNDER_REVIEW)

    def test_parallel_identical_overrides_apply_once(self):
        engine = _engine()
        _customer(engine, 84)
        ret = engine.submit_return("C-1", "Wrong size", 120.0)
        barrier = threading.Barrier(6)

        def approve(_):
            barrier.wait()
            return engine.decide_return(ret.return_id, "approved", "Receipt verified")

        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(approve, range(6)))

        self.assertIs(ret.status, ReturnStatus.APPROVED)
        self.assertEqual(_actions(engine, ret.return_id).count("return_overridden"), 1)

    def test_parallel_conflicting_overrides_one_wins(self):
        engine = _engine()
        _customer(engine, 84)
        ret = engine.submit_return("C-1", "Wrong size", 120.0)
        outcomes = []
        lock = threading.Lock()

        def decide(decision):
            try:
                engine.decide_return(ret.return_id, decision, "operator call")
                result = "ok"
            except InvalidTransition:
                result = "conflict"
            with lock:
                outcomes.append(result)

        with ThreadPoolExecutor(max_workers=2) as pool:
            list(pool.map(decide, ["approved", "rejected"]))

        self.assertEqual(sorted(outcomes), ["conflict", "ok"])
        self.assertTrue(ret.is_terminal)


if __name__ == "__main__":
    unittest.main()
