from django.core.management.base import BaseCommand, CommandError

from core.models import Branch
from inventory.invariants import check_all


class Command(BaseCommand):
    help = "Verify stock levels against the stock move history and completed transfers."

    def add_arguments(self, parser):
        parser.add_argument("--branch-id", dest="branch_id", help="Optional branch UUID.")

    def handle(self, *args, **options):
        branch = None
        if options.get("branch_id"):
            branch = Branch.objects.filter(id=options["branch_id"]).first()
            if branch is None:
                raise CommandError(f"Branch {options['branch_id']} does not exist.")

        violations = check_all(branch=branch)
        if not violations:
            self.stdout.write(self.style.SUCCESS("No inventory invariant violations found."))
            return

        for violation in violations:
            self.stdout.write(f"- {violation}")
        raise CommandError(f"Found {len(violations)} inventory invariant violation(s).")
