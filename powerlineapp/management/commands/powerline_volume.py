from django.core.management.base import BaseCommand, CommandError

from powerlineapp import services
from powerlineapp.exceptions import PowerLineError


class Command(BaseCommand):
    help = "Record a volume event for a position and propagate it upline"

    def add_arguments(self, parser):
        parser.add_argument("node_id", type=str)
        parser.add_argument("amount", type=str)
        parser.add_argument("--source-ref", type=str, default=None)

    def handle(self, *args, **options):
        try:
            result = services.record_volume_event(
                options["node_id"], options["amount"], source_ref=options["source_ref"]
            )
        except (PowerLineError, ValueError) as e:
            raise CommandError(str(e))

        self.stdout.write(self.style.SUCCESS(
            f"{result['node_id']} personal volume now {result['personal_volume']}"
        ))
        for row in result["updated"]:
            self.stdout.write(
                f"  {row['node_id']}: L={row['left_leg_volume']} R={row['right_leg_volume']} "
                f"cycles={row['cycles_completed']}"
            )
