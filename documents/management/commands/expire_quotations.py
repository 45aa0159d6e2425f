from django.core.management.base import BaseCommand

from documents.services.quotations import expire_overdue_quotations


class Command(BaseCommand):
    help = "Expire quotations whose validity has run out and release their reserved units"

    def add_arguments(self, parser):
        parser.add_argument("--user", default="system", help="User id recorded on the transition")

    def handle(self, *args, **opts):
        expired = expire_overdue_quotations(user_id=opts["user"])
        for number in expired:
            self.stdout.write(f"  {number}")
        self.stdout.write(self.style.SUCCESS(f"Expired quotations: {len(expired)}"))
