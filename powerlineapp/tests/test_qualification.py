import threading
import unittest
from datetime import datetime, timezone
from decimal import Decimal

from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings

from powerlineapp import ledger
from powerlineapp.engine import placement, qualification, volume
from powerlineapp.models import CommissionEvent, Position
from powerlineapp.signals import commission_emitted


class QualificationTestMixin:
    def build(self):
        placement.create_root(occupant_id="alice")
        placement.place("PL", occupant_id="bob")    # PLL
        placement.place("PL", occupant_id="carol")  # PLR

    def root(self):
        return Position.objects.get(pk="PL")


class BinaryCycleTest(QualificationTestMixin, TestCase):
    def setUp(self):
        self.build()

    def test_one_cycle_from_matched_volume(self):
        volume.apply_volume("PLL", 1200)
        volume.apply_volume("PLR", 900)

        root = self.root()
        self.assertEqual(root.left_leg_volume, Decimal("700.00"))
        self.assertEqual(root.right_leg_volume, Decimal("400.00"))
        self.assertEqual(root.matched_volume_consumed, Decimal("500.00"))
        self.assertEqual(root.cycles_completed, 1)

        event = CommissionEvent.objects.get()
        self.assertEqual(event.event_id, "PL:1")
        self.assertEqual(event.recipient_id, "alice")
        self.assertEqual(event.amount, Decimal("50.00"))
        self.assertEqual(event.matched_volume, Decimal("500.00"))
        self.assertEqual(event.left_leg_after, Decimal("700.00"))
        self.assertEqual(event.right_leg_after, Decimal("400.00"))

    def test_several_cycles_at_once(self):
        volume.apply_volume("PLL", 1600, qualify=False)
        volume.apply_volume("PLR", 1500, qualify=False)

        events = qualification.evaluate("PL")

        self.assertEqual([e.event_id for e in events], ["PL:1", "PL:2", "PL:3"])
        root = self.root()
        self.assertEqual(root.left_leg_volume, Decimal("100.00"))
        self.assertEqual(root.right_leg_volume, Decimal("0.00"))

    def test_second_evaluation_emits_nothing(self):
        volume.apply_volume("PLL", 1200)
        volume.apply_volume("PLR", 900)

        self.assertEqual(qualification.evaluate("PL"), [])
        self.assertEqual(CommissionEvent.objects.count(), 1)
        self.assertEqual(self.root().cycles_completed, 1)

    def test_below_cycle_volume(self):
        volume.apply_volume("PLL", 499)
        volume.apply_volume("PLR", 2000)
        self.assertEqual(CommissionEvent.objects.count(), 0)

    @override_settings(POWERLINE={"CYCLE_VOLUME": "100", "COMMISSION_PER_CYCLE": "7.5"})
    def test_configured_unit_and_rate(self):
        volume.apply_volume("PLL", 250)
        volume.apply_volume("PLR", 250)

        amounts = list(CommissionEvent.objects.values_list("amount", flat=True))
        self.assertEqual(amounts, [Decimal("7.50"), Decimal("7.50")])
        self.assertEqual(self.root().left_leg_volume, Decimal("50.00"))

    def test_commission_signal_after_commit(self):
        received = []

        def receiver(sender, event, **kwargs):
            received.append(event.event_id)

        commission_emitted.connect(receiver, weak=False)
        self.addCleanup(commission_emitted.disconnect, receiver)

        with self.captureOnCommitCallbacks(execute=True):
            volume.apply_volume("PLL", 1000)
            volume.apply_volume("PLR", 1000)
            self.assertEqual(received, [])
        self.assertEqual(received, ["PL:1", "PL:2"])

    def test_replayed_event_is_not_paid_twice(self):
        volume.apply_volume("PLL", 600, qualify=False)
        volume.apply_volume("PLR", 600, qualify=False)
        ledger.record(
            position=self.root(),
            recipient_id="alice",
            amount=Decimal("50.00"),
            cycle_number=1,
            matched_volume=Decimal("500"),
            left_leg_after=Decimal("100"),
            right_leg_after=Decimal("100"),
        )

        with self.assertLogs("powerlineapp.engine.qualification", "WARNING"):
            self.assertEqual(qualification.evaluate("PL"), [])

        root = self.root()
        self.assertEqual(root.left_leg_volume, Decimal("600.00"))
        self.assertEqual(root.cycles_completed, 0)
        self.assertEqual(CommissionEvent.objects.count(), 1)


class VacantPositionTest(TestCase):
    def setUp(self):
        placement.create_root(occupant_id="alice")
        placement.place("PL")                      # PLL, vacant
        placement.place("PL", occupant_id="bob")   # PLR
        placement.place("PL", occupant_id="dave")  # PLLL
        placement.place("PL", occupant_id="erin")  # PLLR

    def test_vacant_banks_until_filled(self):
        volume.apply_volume("PLLL", 500)
        volume.apply_volume("PLLR", 500)

        vacant = Position.objects.get(pk="PLL")
        self.assertEqual(vacant.left_leg_volume, Decimal("500.00"))
        self.assertEqual(vacant.right_leg_volume, Decimal("500.00"))
        self.assertFalse(CommissionEvent.objects.filter(position=vacant).exists())

        filled = placement.fill_vacancy("PLL", "frank")

        self.assertEqual(filled.cycles_completed, 1)
        self.assertEqual(filled.left_leg_volume, Decimal("0.00"))
        self.assertEqual(CommissionEvent.objects.get(position=filled).recipient_id, "frank")


class CycleCapTest(QualificationTestMixin, TestCase):
    def setUp(self):
        self.build()
        volume.apply_volume("PLL", 1500, qualify=False)
        volume.apply_volume("PLR", 1500, qualify=False)

    @override_settings(POWERLINE={"MAX_CYCLES_PER_WINDOW": 1, "QUALIFICATION_WINDOW": "daily"})
    def test_surplus_stays_banked_for_the_window(self):
        self.assertEqual(len(qualification.evaluate("PL")), 1)
        self.assertEqual(qualification.evaluate("PL"), [])

        root = self.root()
        self.assertEqual(root.cycles_completed, 1)
        self.assertEqual(root.left_leg_volume, Decimal("1000.00"))
        self.assertEqual(root.right_leg_volume, Decimal("1000.00"))

    @override_settings(POWERLINE={"MAX_CYCLES_PER_WINDOW": 2, "QUALIFICATION_WINDOW": None})
    def test_cap_per_evaluation_without_window(self):
        self.assertEqual(len(qualification.evaluate("PL")), 2)
        self.assertEqual(len(qualification.evaluate("PL")), 1)
        self.assertEqual(self.root().cycles_completed, 3)


@override_settings(TIME_ZONE="UTC")
class WindowStartTest(TestCase):
    now = datetime(2026, 10, 15, 14, 30, tzinfo=timezone.utc)  # a Thursday

    @override_settings(POWERLINE={"QUALIFICATION_WINDOW": "daily"})
    def test_daily(self):
        self.assertEqual(
            qualification.window_start(self.now),
            datetime(2026, 10, 15, tzinfo=timezone.utc),
        )

    @override_settings(POWERLINE={"QUALIFICATION_WINDOW": "weekly"})
    def test_weekly_starts_monday(self):
        self.assertEqual(
            qualification.window_start(self.now),
            datetime(2026, 10, 12, tzinfo=timezone.utc),
        )

    @override_settings(POWERLINE={"QUALIFICATION_WINDOW": None})
    def test_no_window(self):
        self.assertIsNone(qualification.window_start(self.now))

    def test_no_window_from_environment_strings(self):
        for value in ("", "none", "None"):
            with override_settings(POWERLINE={"QUALIFICATION_WINDOW": value}):
                self.assertIsNone(qualification.window_start(self.now))

    @override_settings(POWERLINE={"QUALIFICATION_WINDOW": "Weekly"})
    def test_window_name_case_insensitive(self):
        self.assertEqual(
            qualification.window_start(self.now),
            datetime(2026, 10, 12, tzinfo=timezone.utc),
        )

    @override_settings(POWERLINE={"QUALIFICATION_WINDOW": "monthly"})
    def test_unknown_window(self):
        with self.assertRaises(ValueError):
            qualification.window_start(self.now)


class QualificationSummaryTest(QualificationTestMixin, TestCase):
    def setUp(self):
        self.build()

    def test_gap_to_next_cycle(self):
        volume.apply_volume("PLL", 1200, qualify=False)
        volume.apply_volume("PLR", 900, qualify=False)

        summary = qualification.qualification_summary("PL")

        self.assertEqual(summary["lesser_leg_volume"], Decimal("900.00"))
        self.assertEqual(summary["cycles_available"], 1)
        self.assertEqual(summary["next_cycle_gap_amount"], Decimal("100"))
        self.assertEqual(summary["projected_commission"], Decimal("50.00"))
        self.assertEqual(summary["cycles_completed"], 0)

    def test_empty_legs(self):
        summary = qualification.qualification_summary("PL")
        self.assertEqual(summary["cycles_available"], 0)
        self.assertEqual(summary["next_cycle_gap_amount"], Decimal("500"))


class SweepTest(TestCase):
    def setUp(self):
        placement.create_root(occupant_id="alice")
        for name in ("bob", "carol", "dave", "erin"):
            placement.place("PL", occupant_id=name)  # PLL, PLR, PLLL, PLLR
        volume.apply_volume("PLLL", 600, qualify=False)
        volume.apply_volume("PLLR", 600, qualify=False)
        volume.apply_volume("PLR", 500, qualify=False)

    def test_sweep_converts_pending_volume(self):
        self.assertEqual(
            list(qualification.qualifying_positions().values_list("node_id", flat=True)),
            ["PLL", "PL"],
        )

        result = qualification.run_sweep()

        self.assertEqual(result, {"positions_evaluated": 2, "cycles_emitted": 2, "amount": Decimal("100.00")})
        self.assertEqual(Position.objects.get(pk="PLL").left_leg_volume, Decimal("100.00"))
        self.assertEqual(Position.objects.get(pk="PL").left_leg_volume, Decimal("700.00"))

    def test_sweep_is_repeatable(self):
        qualification.run_sweep()
        result = qualification.run_sweep()
        self.assertEqual(result["cycles_emitted"], 0)
        self.assertEqual(CommissionEvent.objects.count(), 2)


@unittest.skipUnless(connection.vendor == "postgresql", "row locks need PostgreSQL")
class ConcurrentEvaluateTest(QualificationTestMixin, TransactionTestCase):
    def test_parallel_evaluations_consume_volume_once(self):
        self.build()
        volume.apply_volume("PLL", 1500, qualify=False)
        volume.apply_volume("PLR", 1500, qualify=False)
        emitted = []
        errors = []

        def worker():
            try:
                emitted.extend(e.event_id for e in qualification.evaluate("PL"))
            except Exception as e:  # collected for the assertion below
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertEqual(sorted(emitted), ["PL:1", "PL:2", "PL:3"])
        self.assertEqual(CommissionEvent.objects.count(), 3)

        root = self.root()
        self.assertEqual(root.cycles_completed, 3)
        self.assertEqual(root.left_leg_volume, Decimal("0.00"))
        self.assertEqual(root.right_leg_volume, Decimal("0.00"))
        self.assertEqual(root.matched_volume_consumed, Decimal("1500.00"))
