from django.core.management.base import BaseCommand

from inventory.services.reservations import reconcile_pending_releases


class Command(BaseCommand):
    help = "Retry releasing units of rejected or expired quotations that could not be released"

    def add_arguments(self, parser):
        parser.add_argument("--user", default="system", help="User id recorded on the movements")

    def handle(self, *args, **opts):
        pending = reconcile_pending_releases(user_id=opts["user"])
        style = self.style.SUCCESS if not pending else self.style.WARNING
        self.stdout.write(style(f"Units still pending release: {pending}"))
