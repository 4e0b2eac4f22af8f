from django.core.management.base import BaseCommand, CommandError

from powerlineapp.engine.placement import create_root
from powerlineapp.exceptions import PowerLineError


class Command(BaseCommand):
    help = "Create the PowerLine root position"

    def add_arguments(self, parser):
        parser.add_argument("--occupant", type=str, default=None, help="Promoter id for the root seat")

    def handle(self, *args, **options):
        try:
            root = create_root(occupant_id=options["occupant"])
        except PowerLineError as e:
            raise CommandError(str(e))
        self.stdout.write(self.style.SUCCESS(f"✅ Root {root.node_id} created (#{root.position_number})"))
