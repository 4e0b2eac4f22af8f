from django.core.management.base import BaseCommand, CommandError

from powerlineapp import services
from powerlineapp.exceptions import PowerLineError


class Command(BaseCommand):
    help = "Spillover-place a new position under an anchor (root by default)"

    def add_arguments(self, parser):
        parser.add_argument("--anchor", type=str, default=None)
        parser.add_argument("--side", type=str, default=None, help="Preferred side: L or R")
        parser.add_argument("--occupant", type=str, default=None)
        parser.add_argument("--prospect", type=str, default=None)
        parser.add_argument("--count", type=int, default=1)

    def handle(self, *args, **options):
        for _ in range(max(options["count"], 1)):
            try:
                placed = services.place_prospect(
                    anchor_node_id=options["anchor"],
                    preferred_side=options["side"],
                    prospect_ref=options["prospect"],
                    occupant_id=options["occupant"],
                )
            except PowerLineError as e:
                raise CommandError(str(e))
            self.stdout.write(self.style.SUCCESS(
                f"{placed['node_id']} → level {placed['level']} side {placed['side']} "
                f"under {placed['parent_node_id']} (#{placed['position_number']})"
            ))
