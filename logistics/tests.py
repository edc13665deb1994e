"""
UJANI Logistics Tests
=====================

Tests for:
1. Place-name normalization and rounding helpers
2. Distance Resolver (gps, exact street, ward median, district average, default)
3. Fee Quoting Engine (linear, affordable_v1, relief, minimum, service radius, outside-Dar flat fee)
"""

import json
import os
import tempfile
from io import StringIO

from django.core.management import call_command
from django.test import SimpleTestCase, override_settings

from logistics.services.distance import DistanceResolver, DistanceSource, Resolution
from logistics.services.pricing import DeliveryQuote, FeeQuotingEngine, parse_relief
from logistics.utils import (
    haversine_distance, normalize_place, round_half_up_to_step, round_up_to_step,
)


class TestLogisticsUtils(SimpleTestCase):

    def test_normalize_place_ignores_case_spaces_and_quotes(self):
        self.assertEqual(normalize_place("  Msasani   PENINSULA "), "msasani peninsula")
        self.assertEqual(normalize_place("Chang'ombe"), "changombe")

    def test_normalize_place_strips_diacritics(self):
        self.assertEqual(normalize_place("Mikochéni"), "mikocheni")

    def test_round_half_up(self):
        self.assertEqual(round_half_up_to_step(3249, 500), 3000)
        self.assertEqual(round_half_up_to_step(3250, 500), 3500)
        self.assertEqual(round_half_up_to_step(6200, 500), 6000)

    def test_round_up_to_100m(self):
        self.assertEqual(str(round_up_to_step(1.18)), '1.2')
        self.assertEqual(str(round_up_to_step(1.2)), '1.2')
        self.assertEqual(round_up_to_step(0), 0)

    def test_haversine_same_point_is_zero(self):
        self.assertAlmostEqual(haversine_distance(-6.8357, 39.2724, -6.8357, 39.2724), 0.0)

    def test_haversine_one_degree_latitude(self):
        self.assertAlmostEqual(haversine_distance(0, 39, 1, 39), 111.19, places=1)


class TestDistanceResolver(SimpleTestCase):
    """Uses the packaged Dar es Salaam location table."""

    def setUp(self):
        self.resolver = DistanceResolver()

    def test_exact_street(self):
        result = self.resolver.resolve("Kinondoni", "Mikocheni", "Haile Selassie")
        self.assertEqual(result.source, DistanceSource.EXACT_STREET)
        self.assertEqual(result.distance_km, 6.2)

    def test_street_matching_is_case_and_accent_insensitive(self):
        result = self.resolver.resolve("kinondoni", "MIKOCHENI", "haile sélassie")
        self.assertEqual(result.source, DistanceSource.EXACT_STREET)
        self.assertEqual(result.distance_km, 6.2)

    def test_street_prefix_then_substring(self):
        prefix = self.resolver.resolve("Kinondoni", "Mikocheni", "Regent")
        self.assertEqual(prefix.street, "Regent Estate")
        substring = self.resolver.resolve("Kinondoni", "Mikocheni", "Selassie")
        self.assertEqual(substring.street, "Haile Selassie")
        self.assertEqual(substring.source, DistanceSource.EXACT_STREET)

    def test_unknown_street_falls_back_to_ward_median(self):
        result = self.resolver.resolve("Kinondoni", "Mikocheni", "Barabara Isiyojulikana")
        self.assertEqual(result.source, DistanceSource.WARD_MEDIAN)
        # 6.2, 6.8, 7.0, 8.1
        self.assertAlmostEqual(result.distance_km, 6.9)

    def test_unknown_ward_falls_back_to_district_average(self):
        result = self.resolver.resolve("Temeke", "Hakuna", "Hakuna")
        self.assertEqual(result.source, DistanceSource.DISTRICT_AVERAGE)
        self.assertGreater(result.distance_km, 0)

    def test_unknown_district_uses_default(self):
        result = self.resolver.resolve("Arusha", "Kaloleni", "Sokoine")
        self.assertEqual(result.source, DistanceSource.DEFAULT)
        self.assertEqual(result.distance_km, 8.0)

    def test_gps_wins_over_names(self):
        result = self.resolver.resolve("Kinondoni", "Mikocheni", "Haile Selassie", gps=(-6.8357, 39.2724))
        self.assertEqual(result.source, DistanceSource.GPS)
        self.assertAlmostEqual(result.distance_km, 0.0)

    def test_missing_table_degrades_to_default(self):
        resolver = DistanceResolver(data_path='/nonexistent/dar_location.json')
        with self.assertLogs('logistics.services.distance', level='WARNING') as logs:
            first = resolver.resolve("Kinondoni", "Mikocheni", "Haile Selassie")
            second = resolver.resolve("Ilala")
        self.assertEqual(first.source, DistanceSource.DEFAULT)
        self.assertEqual(second.source, DistanceSource.DEFAULT)
        self.assertEqual(len(logs.records), 1)

    def test_lower_case_rows_and_bad_distances(self):
        rows = [
            {"region": "Dar es Salaam", "district": "Ilala", "ward": "Gerezani", "street": "A", "distance_km": 3},
            {"region": "Dar es Salaam", "district": "Ilala", "ward": "Gerezani", "street": "B", "distance_km": "n/a"},
            {"REGION": "Dar es Salaam", "DISTRICT": "Ilala", "WARD": "Gerezani", "STREET": "C",
             "DISTANCE_FROM_KEKO_MAGURUMBASI_KM": -1},
        ]
        with tempfile.NamedTemporaryFile('w', suffix='.json', delete=False) as fh:
            json.dump(rows, fh)
        self.addCleanup(os.unlink, fh.name)

        resolver = DistanceResolver(data_path=fh.name)
        self.assertEqual(len(resolver.rows), 2)
        self.assertEqual(resolver.resolve("Ilala", "Gerezani", "C").distance_km, 0.0)

    def test_menu_listings(self):
        self.assertIn("Kinondoni", self.resolver.districts())
        self.assertIn("Mikocheni", self.resolver.wards("kinondoni"))
        self.assertEqual(
            self.resolver.streets("Kinondoni", "Mikocheni"),
            ["Haile Selassie", "Mikocheni A", "Mikocheni B", "Regent Estate"],
        )

    def test_match_option(self):
        options = ["Mikocheni", "Msasani", "Mwananyamala"]
        self.assertEqual(DistanceResolver.match_option("msasani", options), "Msasani")
        self.assertEqual(DistanceResolver.match_option("mwana", options), "Mwananyamala")
        self.assertIsNone(DistanceResolver.match_option("m", options))
        self.assertIsNone(DistanceResolver.match_option("", options))


@override_settings(DELIVERY_RELIEF=[], DELIVERY_MINIMUM_FEE=0, SERVICE_RADIUS_KM=0)
class TestFeeQuotingEngine(SimpleTestCase):

    def setUp(self):
        self.engine = FeeQuotingEngine(tariff='linear', rate_per_km=1000, round_to=500)

    # ==========================================
    # Linear preset
    # ==========================================

    def test_linear_rounds_half_up(self):
        self.assertEqual(self.engine.quote(6.2), 6000)
        self.assertEqual(self.engine.quote(6.25), 6500)
        self.assertEqual(self.engine.quote(6.3), 6500)

    def test_zero_distance_is_free(self):
        self.assertEqual(self.engine.quote(0), 0)

    def test_minimum_fee_for_short_hops(self):
        engine = FeeQuotingEngine(tariff='linear', rate_per_km=1000, round_to=500, minimum_fee=500)
        self.assertEqual(engine.quote(0.1), 500)
        self.assertEqual(engine.quote(0), 0)

    def test_monotonic_and_multiple_of_step(self):
        engines = [
            self.engine,
            FeeQuotingEngine(tariff='affordable_v1', round_to=500),
            FeeQuotingEngine(tariff='linear', rate_per_km=1000, round_to=500, relief=['10:0.8', '20:0.5']),
        ]
        for engine in engines:
            previous = 0
            for tenth in range(0, 400):
                fee = engine.quote(tenth / 10)
                self.assertEqual(fee % 500, 0)
                self.assertGreaterEqual(fee, previous)
                previous = fee

    # ==========================================
    # Relief
    # ==========================================

    def test_relief_applies_beyond_threshold(self):
        engine = FeeQuotingEngine(tariff='linear', rate_per_km=1000, round_to=500, relief=['10:0.5'])
        # 10 * 1000 + 10 * 500
        self.assertEqual(engine.quote(20), 15000)
        self.assertEqual(engine.quote(10), 10000)

    def test_parse_relief_skips_malformed_entries(self):
        with self.assertLogs('logistics.services.pricing', level='WARNING'):
            relief = parse_relief(['20:0.6', 'oops', '10:0.8', '5:-1'])
        self.assertEqual([str(t) for t, _ in relief], ['10', '20'])

    # ==========================================
    # Tier preset
    # ==========================================

    def test_affordable_tiers(self):
        engine = FeeQuotingEngine(tariff='affordable_v1', round_to=500)
        self.assertEqual(engine.quote(1.5), 2500)
        self.assertEqual(engine.quote(5), 3500)
        self.assertEqual(engine.quote(6.2), 4500)
        self.assertEqual(engine.quote(25), 8500)
        # 8500 + 3 * 500
        self.assertEqual(engine.quote(28), 10000)

    def test_unknown_tariff(self):
        with self.assertRaises(ValueError):
            FeeQuotingEngine(tariff='premium')

    # ==========================================
    # Quotes
    # ==========================================

    def test_gps_distance_rounded_up_to_100m(self):
        self.assertEqual(FeeQuotingEngine.billable_distance(6.21, DistanceSource.GPS), 6.3)
        self.assertEqual(FeeQuotingEngine.billable_distance(6.21, DistanceSource.EXACT_STREET), 6.21)

    def test_nearby_gps_fixes_get_same_fee(self):
        a = self.engine.build_quote(Resolution(distance_km=6.212, source=DistanceSource.GPS))
        b = self.engine.build_quote(Resolution(distance_km=6.289, source=DistanceSource.GPS))
        self.assertEqual(a.distance_km, b.distance_km)
        self.assertEqual(a.fee_tzs, b.fee_tzs)

    def test_service_radius_flag(self):
        engine = FeeQuotingEngine(tariff='linear', rate_per_km=1000, round_to=500, service_radius_km=20)
        far = engine.build_quote(Resolution(distance_km=28.9, source=DistanceSource.EXACT_STREET))
        near = engine.build_quote(Resolution(distance_km=6.2, source=DistanceSource.EXACT_STREET))
        self.assertTrue(far.out_of_service)
        self.assertFalse(near.out_of_service)
        self.assertFalse(self.engine.is_out_of_service(500))

    def test_flat_fee_beyond_radius(self):
        engine = FeeQuotingEngine(tariff='linear', rate_per_km=1000, round_to=500, service_radius_km=20,
                                  outside_flat_fee=10000)
        far = engine.build_quote(Resolution(distance_km=28.9, source=DistanceSource.EXACT_STREET))
        self.assertEqual((far.fee_tzs, far.flat_rate, far.out_of_service), (10000, True, True))

        near = engine.build_quote(Resolution(distance_km=6.2, source=DistanceSource.EXACT_STREET))
        self.assertEqual((near.fee_tzs, near.flat_rate), (6000, False))

        no_flat = FeeQuotingEngine(tariff='linear', rate_per_km=1000, round_to=500, service_radius_km=20,
                                   outside_flat_fee=0)
        far = no_flat.build_quote(Resolution(distance_km=28.9, source=DistanceSource.EXACT_STREET))
        self.assertEqual((far.fee_tzs, far.flat_rate, far.out_of_service), (29000, False, True))

    def test_outside_dar_quote(self):
        quote = FeeQuotingEngine(tariff='linear', outside_flat_fee=10000).outside_dar_quote()
        self.assertEqual((quote.source, quote.fee_tzs, quote.flat_rate), ('default', 10000, True))
        self.assertEqual(DeliveryQuote.from_dict(quote.to_dict()), quote)
        self.assertIsNone(FeeQuotingEngine(tariff='linear', outside_flat_fee=0).outside_dar_quote())

    def test_quote_round_trips_through_dict(self):
        quote = self.engine.build_quote(
            Resolution(distance_km=6.2, source=DistanceSource.EXACT_STREET,
                       district='Kinondoni', ward='Mikocheni', street='Haile Selassie')
        )
        self.assertEqual(DeliveryQuote.from_dict(quote.to_dict()), quote)
        self.assertIsNone(DeliveryQuote.from_dict(None))


@override_settings(DELIVERY_TARIFF='linear', DELIVERY_RATE_PER_KM=1000, DELIVERY_ROUND_TO=500,
                   DELIVERY_MINIMUM_FEE=0, DELIVERY_RELIEF=[], SERVICE_RADIUS_KM=0)
class TestQuoteDeliveryCommand(SimpleTestCase):

    def test_prints_quote(self):
        out = StringIO()
        call_command('quote_delivery', district='Kinondoni', ward='Mikocheni',
                     street='Haile Selassie', stdout=out)
        output = out.getvalue()
        self.assertIn('exactStreet', output)
        self.assertIn('6,000 TZS', output)
