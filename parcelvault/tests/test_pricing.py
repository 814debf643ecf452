import unittest
from decimal import Decimal
from types import SimpleNamespace

from parcelvault.errors import InvalidPricingConfig, InvalidTier, InvalidWeight
from parcelvault.pricing import calculate_cost, cost_for_location
from parcelvault.types import PricingType


def tier(min_weight, max_weight, price):
    return {"min_weight": min_weight, "max_weight": max_weight, "price": price}


class PerPoundPricingTests(unittest.TestCase):
    def test_disabled_pricing_costs_nothing(self):
        cost = calculate_cost("4", False, PricingType.PER_POUND, "9.99")
        self.assertEqual(cost, Decimal("0"))

    def test_weight_times_rate_is_exact(self):
        cost = calculate_cost("2.5", True, "per_pound", "1.20")
        self.assertEqual(cost, Decimal("3.000"))
        self.assertIsInstance(cost, Decimal)

    def test_float_inputs_do_not_pick_up_binary_noise(self):
        self.assertEqual(calculate_cost(0.1, True, "per_pound", 3), Decimal("0.3"))

    def test_missing_rate_costs_nothing(self):
        self.assertEqual(calculate_cost("3", True, "per_pound", None), Decimal("0"))
        self.assertEqual(calculate_cost("3", True, "per_pound", ""), Decimal("0"))

    def test_missing_pricing_type_means_per_pound(self):
        self.assertEqual(calculate_cost("2", True, None, "1.5"), Decimal("3.0"))

    def test_negative_rate_is_rejected(self):
        with self.assertRaises(InvalidPricingConfig):
            calculate_cost("2", True, "per_pound", "-1")

    def test_rate_finer_than_four_places_is_rejected(self):
        with self.assertRaises(InvalidPricingConfig):
            calculate_cost("2", True, "per_pound", "0.12345")
        self.assertEqual(calculate_cost("2", True, "per_pound", "0.1234"), Decimal("0.2468"))

    def test_unknown_pricing_type_is_rejected(self):
        with self.assertRaises(InvalidPricingConfig):
            calculate_cost("2", True, "per_parcel", "1")


class RangePricingTests(unittest.TestCase):
    def test_first_matching_tier_wins_in_stored_order(self):
        tiers = [tier("5", "10", "7"), tier("0", "5", "3")]
        # 5 is inside both inclusive ranges; the first stored tier wins.
        self.assertEqual(calculate_cost("5", True, "range_based", tiers=tiers), Decimal("7"))
        self.assertEqual(calculate_cost("1", True, "range_based", tiers=tiers), Decimal("3"))

    def test_weight_above_every_tier_uses_the_highest_tier(self):
        tiers = [tier("0", "5", "3"), tier("5.01", "10", "7")]
        self.assertEqual(calculate_cost("25", True, "range_based", tiers=tiers), Decimal("7"))

    def test_weight_below_every_tier_costs_nothing(self):
        tiers = [tier("2", "5", "3")]
        self.assertEqual(calculate_cost("1", True, "range_based", tiers=tiers), Decimal("0"))

    def test_weight_in_a_gap_costs_nothing(self):
        tiers = [tier("0", "2", "1"), tier("5", "10", "4")]
        self.assertEqual(calculate_cost("3", True, "range_based", tiers=tiers), Decimal("0"))

    def test_no_tiers_costs_nothing(self):
        self.assertEqual(calculate_cost("3", True, "range_based", tiers=[]), Decimal("0"))

    def test_camel_case_tier_keys_are_accepted(self):
        tiers = [{"minWeight": "0", "maxWeight": "5", "price": "2.50"}]
        self.assertEqual(calculate_cost("1", True, "range_based", tiers=tiers), Decimal("2.50"))

    def test_malformed_tier_is_rejected(self):
        with self.assertRaises(InvalidTier):
            calculate_cost("1", True, "range_based", tiers=[tier("a", "5", "1")])
        with self.assertRaises(InvalidTier):
            calculate_cost("1", True, "range_based", tiers=[tier("6", "5", "1")])
        with self.assertRaises(InvalidTier):
            calculate_cost("1", True, "range_based", tiers=[tier("0", "5", "-1")])

    def test_tier_values_finer_than_stored_scale_are_rejected(self):
        with self.assertRaises(InvalidTier):
            calculate_cost("1", True, "range_based", tiers=[tier("0.00001", "5", "1")])
        with self.assertRaises(InvalidTier):
            calculate_cost("1", True, "range_based", tiers=[tier("0", "5", "1.005")])


class WeightValidationTests(unittest.TestCase):
    def test_non_positive_weight_is_rejected_even_when_pricing_is_off(self):
        for weight in ("0", 0, "-1", -2.5):
            with self.subTest(weight=weight):
                with self.assertRaises(InvalidWeight):
                    calculate_cost(weight, False, "per_pound", "1")

    def test_malformed_weight_is_rejected(self):
        for weight in ("abc", None, True, "nan", "inf"):
            with self.subTest(weight=weight):
                with self.assertRaises(InvalidWeight):
                    calculate_cost(weight, True, "per_pound", "1")

    def test_weight_finer_than_four_places_is_rejected(self):
        for weight in ("0.00004", "1.00001", Decimal("2.123456")):
            with self.subTest(weight=weight):
                with self.assertRaises(InvalidWeight):
                    calculate_cost(weight, False, "per_pound", "1")

    def test_trailing_zeros_do_not_count_as_precision(self):
        self.assertEqual(calculate_cost("2.50000", True, "per_pound", "2"), Decimal("5"))
        self.assertEqual(calculate_cost("0.0045", True, "per_pound", "1000"), Decimal("4.5"))

    def test_cost_is_never_negative(self):
        tiers = [tier("0", "1", "0"), tier("1", "3", "4.5")]
        for weight in ("0.01", "1", "2", "3", "99"):
            with self.subTest(weight=weight):
                self.assertGreaterEqual(
                    calculate_cost(weight, True, "range_based", tiers=tiers), Decimal("0")
                )


class CostForLocationTests(unittest.TestCase):
    def test_reads_location_configuration(self):
        location = SimpleNamespace(
            pricing_enabled=True,
            pricing_type=PricingType.RANGE_BASED,
            per_pound_rate=None,
        )
        tiers = [SimpleNamespace(min_weight=Decimal("0"), max_weight=Decimal("5"), price=Decimal("4"))]
        self.assertEqual(cost_for_location(location, tiers, Decimal("2")), Decimal("4"))


if __name__ == "__main__":
    unittest.main()
