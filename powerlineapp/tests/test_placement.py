import threading
import unittest
from unittest import mock

from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings

from powerlineapp import store
from powerlineapp.engine import placement
from powerlineapp.exceptions import (
    ConcurrentPlacementConflict,
    InvalidPath,
    NoAvailableSlot,
    PositionNotFound,
    PositionOccupied,
    RootAlreadyExists,
)
from powerlineapp.models import Position, PositionCounter
from powerlineapp.signals import position_placed


class SpilloverPlacementTest(TestCase):
    def setUp(self):
        self.root = placement.create_root(occupant_id="alice")

    def test_root(self):
        self.assertEqual(self.root.node_id, "PL")
        self.assertEqual(self.root.path, "")
        self.assertEqual(self.root.level, 0)
        self.assertEqual(self.root.position_number, 1)
        self.assertTrue(self.root.is_root)

    def test_second_root_rejected(self):
        with self.assertRaises(RootAlreadyExists):
            placement.create_root(occupant_id="bob")

    def test_fills_level_by_level_left_first(self):
        placed = [placement.place("PL", occupant_id=f"p{i}").node_id for i in range(6)]
        self.assertEqual(placed, ["PLL", "PLR", "PLLL", "PLLR", "PLRL", "PLRR"])

        pll = Position.objects.get(pk="PLL")
        self.assertEqual(pll.path, "L")
        self.assertEqual(pll.level, 1)
        self.assertEqual(pll.parent_id, "PL")
        self.assertEqual(pll.left_child_id, "PLLL")
        self.assertEqual(pll.right_child_id, "PLLR")

    def test_position_numbers_strictly_increase(self):
        numbers = [placement.place("PL").position_number for _ in range(5)]
        self.assertEqual(numbers, [2, 3, 4, 5, 6])
        self.assertEqual(PositionCounter.objects.get(name=store.POSITION_COUNTER).last, 6)

    def test_preferred_side_honoured_when_open(self):
        self.assertEqual(placement.place("PL", preferred_side="right").node_id, "PLR")
        # right is taken now, the only open side wins
        self.assertEqual(placement.place("PL", preferred_side="R").node_id, "PLL")

    def test_anchor_limits_search_to_its_subtree(self):
        placement.place("PL")
        placement.place("PL")
        child = placement.place("PLR")
        self.assertEqual(child.node_id, "PLRL")
        self.assertEqual(child.parent_id, "PLR")

    def test_subtree_size_counts_occupied_only(self):
        placement.place("PL", occupant_id="bob")
        placement.place("PL")
        placement.place("PL", occupant_id="carol")

        self.root.refresh_from_db()
        self.assertEqual(self.root.subtree_size, 2)
        self.assertEqual(Position.objects.get(pk="PLL").subtree_size, 1)
        self.assertEqual(Position.objects.get(pk="PLR").subtree_size, 0)

    def test_unknown_anchor(self):
        with self.assertRaises(PositionNotFound):
            placement.place("NOPE")

    def test_bad_side(self):
        with self.assertRaises(InvalidPath):
            placement.place("PL", preferred_side="up")

    @override_settings(POWERLINE={"MAX_POSITIONS": 3})
    def test_capacity_limit(self):
        placement.place("PL")
        placement.place("PL")
        with self.assertRaises(NoAvailableSlot):
            placement.place("PL")

    @override_settings(POWERLINE={"MAX_DEPTH": 1})
    def test_depth_limit(self):
        placement.place("PL")
        placement.place("PL")
        with self.assertRaises(NoAvailableSlot):
            placement.place("PL")

    def test_placed_signal_after_commit(self):
        received = []

        def receiver(sender, position, **kwargs):
            received.append(position.node_id)

        position_placed.connect(receiver, weak=False)
        self.addCleanup(position_placed.disconnect, receiver)

        with self.captureOnCommitCallbacks(execute=True):
            placement.place("PL")
            self.assertEqual(received, [])
        self.assertEqual(received, ["PLL"])


class PlacementConflictTest(TestCase):
    """A stale scan result makes the claim collide, like a lost race."""

    def setUp(self):
        placement.create_root(occupant_id="alice")
        self.stale_root = Position.objects.get(pk="PL")
        placement.place("PL")

    def test_conflict_is_retried(self):
        real_scan = placement._find_open_slot
        calls = []

        def stale_then_fresh(anchor):
            calls.append(anchor.node_id)
            return self.stale_root if len(calls) == 1 else real_scan(anchor)

        with mock.patch.object(placement, "_find_open_slot", side_effect=stale_then_fresh):
            with self.assertLogs("powerlineapp.engine.placement", "WARNING"):
                child = placement.place("PL")

        self.assertEqual(len(calls), 2)
        self.assertEqual(child.node_id, "PLR")
        # the losing attempt's number was rolled back with its savepoint
        self.assertEqual(child.position_number, 3)
        self.assertEqual(Position.objects.count(), 3)

    @override_settings(POWERLINE={"PLACEMENT_MAX_ATTEMPTS": 3})
    def test_conflict_retries_exhausted(self):
        with mock.patch.object(placement, "_find_open_slot", return_value=self.stale_root):
            with self.assertLogs("powerlineapp.engine.placement", "WARNING") as logs:
                with self.assertRaises(ConcurrentPlacementConflict) as ctx:
                    placement.place("PL")

        self.assertEqual(ctx.exception.attempts, 3)
        self.assertEqual(len(logs.records), 3)
        self.assertEqual(Position.objects.count(), 2)

    @override_settings(POWERLINE={"MAX_POSITIONS": 3})
    def test_cap_holds_when_another_placement_lands_first(self):
        real_scan = placement._find_open_slot
        calls = []

        def other_worker_places_first(anchor):
            calls.append(anchor.node_id)
            if len(calls) == 1:
                # fills the last allowed seat (PLR, #3) between scan and claim
                placement._claim_slot(real_scan(anchor), "R")
            return real_scan(anchor)

        with mock.patch.object(placement, "_find_open_slot", side_effect=other_worker_places_first):
            with self.assertRaises(NoAvailableSlot):
                placement.place("PL")

        self.assertEqual(Position.objects.count(), 3)
        self.assertEqual(PositionCounter.objects.get(name=store.POSITION_COUNTER).last, 3)


class FillVacancyTest(TestCase):
    def setUp(self):
        placement.create_root(occupant_id="alice")
        self.vacant = placement.place("PL")

    def test_fill(self):
        self.assertTrue(self.vacant.is_vacant)
        filled = placement.fill_vacancy(self.vacant.node_id, "bob")

        self.assertEqual(filled.occupant_id, "bob")
        self.assertIsNotNone(filled.placed_at)
        self.assertEqual(Position.objects.get(pk="PL").subtree_size, 1)

    def test_occupied_rejected(self):
        placement.fill_vacancy(self.vacant.node_id, "bob")
        with self.assertRaises(PositionOccupied):
            placement.fill_vacancy(self.vacant.node_id, "carol")

    def test_occupant_required(self):
        with self.assertRaises(ValueError):
            placement.fill_vacancy(self.vacant.node_id, "")


@unittest.skipUnless(connection.vendor == "postgresql", "row locks need PostgreSQL")
class ConcurrentPlacementTest(TransactionTestCase):
    @override_settings(POWERLINE={"PLACEMENT_MAX_ATTEMPTS": 20})
    def test_parallel_placements_never_share_a_slot(self):
        placement.create_root(occupant_id="alice")
        errors = []

        def worker(n):
            try:
                placement.place("PL", occupant_id=f"w{n}")
            except Exception as e:  # collected for the assertion below
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(12)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertEqual(Position.objects.count(), 13)
        numbers = list(Position.objects.values_list("position_number", flat=True))
        self.assertEqual(len(set(numbers)), 13)
        for p in Position.objects.exclude(parent__isnull=True):
            self.assertEqual(p.node_id, store.child_node_id(p.parent_id, p.side))
