"""
Django management command to quote a delivery from the command line.

Usage:
    python manage.py quote_delivery --district Kinondoni --ward Mikocheni --street "Haile Selassie"
    python manage.py quote_delivery --gps -6.7640 39.2460
"""
from django.core.management.base import BaseCommand, CommandError

from logistics.services.distance import get_distance_resolver
from logistics.services.pricing import FeeQuotingEngine


class Command(BaseCommand):
    help = 'Resolve a delivery distance and print the fee quote'

    def add_arguments(self, parser):
        parser.add_argument('--district', default=None)
        parser.add_argument('--ward', default=None)
        parser.add_argument('--street', default=None)
        parser.add_argument('--gps', nargs=2, type=float, metavar=('LAT', 'LON'), default=None)
        parser.add_argument('--tariff', default=None, help='linear or affordable_v1')

    def handle(self, *args, **options):
        try:
            engine = FeeQuotingEngine(tariff=options['tariff'])
        except ValueError as e:
            raise CommandError(str(e))

        resolution = get_distance_resolver().resolve(
            district=options['district'],
            ward=options['ward'],
            street=options['street'],
            gps=tuple(options['gps']) if options['gps'] else None,
        )
        quote = engine.build_quote(resolution)

        self.stdout.write(f"Source      : {quote.source}")
        self.stdout.write(f"Location    : {quote.district or '-'} / {quote.ward or '-'} / {quote.street or '-'}")
        self.stdout.write(f"Distance    : {quote.distance_km} km")
        self.stdout.write(f"Tariff      : {quote.tariff}")
        self.stdout.write(self.style.SUCCESS(f"Fee         : {quote.fee_tzs:,} TZS"))
        if quote.flat_rate:
            self.stdout.write(self.style.WARNING("Outside the service radius, flat outside-Dar fee"))
        elif quote.out_of_service:
            self.stdout.write(self.style.WARNING("Outside the service radius"))
