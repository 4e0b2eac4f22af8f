from django.core.management.base import BaseCommand

from powerlineapp.engine import qualification
from powerlineapp.engine.sweep_lock import run_with_lock
from powerlineapp.tasks import SWEEP_KEY


class Command(BaseCommand):
    help = "Run the binary qualification sweep over every qualifying position"

    def add_arguments(self, parser):
        parser.add_argument("--force", action="store_true", help="Ignore the cooldown")

    def handle(self, *args, **options):
        cooldown = 0 if options["force"] else None
        result = run_with_lock(SWEEP_KEY, qualification.run_sweep, cooldown_minutes=cooldown)
        if result is None:
            self.stdout.write(self.style.WARNING("⛔ Sweep skipped (running or cooling down)"))
            return
        self.stdout.write(self.style.SUCCESS(
            f"✅ {result['positions_evaluated']} positions evaluated, "
            f"{result['cycles_emitted']} cycles, {result['amount']} paid"
        ))
