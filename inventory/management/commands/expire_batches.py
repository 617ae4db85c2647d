from datetime import date

from django.core.management.base import BaseCommand, CommandError

from common.utils import parse_uuid
from core.models import Branch
from inventory.ledger import expire_batches


class Command(BaseCommand):
    help = "Mark active batches past their expiry date as expired, for one branch or all branches."

    def add_arguments(self, parser):
        parser.add_argument("--branch-id", dest="branch_id", help="Optional branch UUID.")
        parser.add_argument("--as-of", dest="as_of", help="Cut-off day as YYYY-MM-DD (default: today).")

    def handle(self, *args, **options):
        branch_id = options.get("branch_id")
        as_of = None
        if options.get("as_of"):
            try:
                as_of = date.fromisoformat(options["as_of"])
            except ValueError:
                raise CommandError("--as-of must be a date in YYYY-MM-DD format.")

        if branch_id:
            branch_id = parse_uuid(branch_id)
            if branch_id is None or not Branch.objects.filter(id=branch_id).exists():
                raise CommandError(f"Branch {options['branch_id']} does not exist.")

        count = expire_batches(as_of=as_of, branch_id=branch_id)
        self.stdout.write(self.style.SUCCESS(f"Expired {count} batches."))
