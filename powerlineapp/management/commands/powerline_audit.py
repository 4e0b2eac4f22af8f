from django.core.management.base import BaseCommand, CommandError

from powerlineapp.audit import audit_tree


class Command(BaseCommand):
    help = "Check PowerLine tree invariants (read-only, never repairs)"

    def handle(self, *args, **options):
        issues = audit_tree()
        if issues:
            for issue in issues:
                self.stdout.write(self.style.ERROR(issue))
            raise CommandError(f"{len(issues)} issue(s) found")
        self.stdout.write(self.style.SUCCESS("✅ PowerLine tree consistent"))
