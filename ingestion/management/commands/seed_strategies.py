"""
Management command to seed the strategy catalog.

Usage:
    python manage.py seed_strategies                      # Seed all strategies
    python manage.py seed_strategies --kind=discovery     # Discovery only
    python manage.py seed_strategies --dry-run            # Preview without changes
"""

from django.core.management.base import BaseCommand

from ingestion.models import StrategyKind
from ingestion.services import get_services
from ingestion.services.strategy_seeds import SEED_STRATEGIES


class Command(BaseCommand):
    help = "Seed discovery and dish extraction strategies"

    def add_arguments(self, parser):
        parser.add_argument(
            "--kind",
            type=str,
            default="all",
            choices=[StrategyKind.DISCOVERY, StrategyKind.DISH_EXTRACTION, "all"],
            help="Seed one strategy kind (default: all)",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be seeded without making changes",
        )

    def handle(self, *args, **options):
        kind = options["kind"]
        definitions = [
            d for d in SEED_STRATEGIES
            if kind == "all" or d.get("kind", StrategyKind.DISCOVERY) == kind
        ]

        if options["dry_run"]:
            self.stdout.write(self.style.WARNING("DRY RUN - No changes will be made"))
            for definition in definitions:
                self.stdout.write(
                    f"  {definition.get('kind', StrategyKind.DISCOVERY)}:{definition['platform']} "
                    f"{definition.get('country', '')} {definition.get('config')}"
                )
            self.stdout.write(f"{len(definitions)} definition(s)")
            return

        created = get_services().strategies.seed_strategies(definitions)
        self.stdout.write(
            self.style.SUCCESS(f"Seeded {created} strategies ({len(definitions) - created} already present)")
        )
