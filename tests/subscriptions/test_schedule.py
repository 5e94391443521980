# ===============================================================================
# SUBSCRIPTION DATE SCHEDULE TESTS
# ===============================================================================

from datetime import datetime, timedelta

from django.test import SimpleTestCase

from apps.subscriptions.exceptions import DateOrderingError
from apps.subscriptions.schedule import (
    BillingTerms,
    Schedule,
    ScheduleSnapshot,
    add_months,
    add_time,
    calculate_date,
    calculate_end_of_prepaid_term,
    calculate_next_payment,
    calculate_trial_end,
    days_in_cycle,
    validate_date_set,
)
from tests.factories.subscriptions import at

MONTHLY = BillingTerms(period="month", interval=1)


def snapshot(terms: BillingTerms = MONTHLY, payments: int = 0, synchronised: bool = False,
             **dates: datetime | None) -> ScheduleSnapshot:
    return ScheduleSnapshot(
        schedule=Schedule(**dates),
        terms=terms,
        completed_payment_count=payments,
        is_synchronised=synchronised,
    )


class CalendarArithmeticTests(SimpleTestCase):
    """Month-aware date arithmetic"""

    def test_month_end_stays_on_month_end(self):
        self.assertEqual(add_months(at(2024, 1, 31), 1), at(2024, 2, 29))
        self.assertEqual(add_months(at(2024, 2, 29), 1), at(2024, 3, 31))
        self.assertEqual(add_months(at(2024, 4, 30), 1), at(2024, 5, 31))

    def test_day_is_clamped_to_shorter_month(self):
        self.assertEqual(add_months(at(2024, 1, 30), 1), at(2024, 2, 29))
        self.assertEqual(add_months(at(2023, 1, 30), 1), at(2023, 2, 28))

    def test_mid_month_day_is_kept(self):
        self.assertEqual(add_months(at(2024, 1, 15), 1), at(2024, 2, 15))
        self.assertEqual(add_months(at(2024, 11, 15), 3), at(2025, 2, 15))

    def test_add_time_periods(self):
        start = at(2024, 2, 29)
        self.assertEqual(add_time(3, "day", start), at(2024, 3, 3))
        self.assertEqual(add_time(2, "week", start), at(2024, 3, 14))
        self.assertEqual(add_time(1, "month", start), at(2024, 3, 31))
        self.assertEqual(add_time(1, "year", start), at(2025, 2, 28))

    def test_add_time_rejects_unknown_period(self):
        with self.assertRaises(ValueError):
            add_time(1, "fortnight", at(2024, 1, 1))

    def test_days_in_cycle(self):
        self.assertEqual(days_in_cycle("week", 2), 14)
        self.assertEqual(days_in_cycle("day", 30), 30)

    def test_billing_terms_validation(self):
        with self.assertRaises(ValueError):
            BillingTerms(period="fortnight")
        with self.assertRaises(ValueError):
            BillingTerms(interval=0)
        with self.assertRaises(ValueError):
            BillingTerms(length=-1)


class NextPaymentCalculationTests(SimpleTestCase):
    """calculate_next_payment() anchor precedence and guards"""

    def test_first_renewal_is_one_interval_after_start(self):
        result = calculate_next_payment(
            snapshot(start=at(2024, 1, 15), last_payment=at(2024, 1, 15)), now=at(2024, 1, 15)
        )
        self.assertEqual(result.unwrap(), at(2024, 2, 15))

    def test_missed_cycle_is_skipped(self):
        result = calculate_next_payment(
            snapshot(start=at(2024, 1, 15), last_payment=at(2024, 2, 15), next_payment=at(2024, 3, 15)),
            now=at(2024, 3, 20),
        )
        self.assertEqual(result.unwrap(), at(2024, 4, 15))

    def test_future_trial_end_is_next_payment(self):
        result = calculate_next_payment(
            snapshot(start=at(2024, 1, 10), trial_end=at(2024, 2, 1)), now=at(2024, 1, 20)
        )
        self.assertEqual(result.unwrap(), at(2024, 2, 1))

    def test_trial_end_inside_end_buffer_leaves_no_payment(self):
        result = calculate_next_payment(
            snapshot(start=at(2024, 1, 15), trial_end=at(2024, 1, 22), end=at(2024, 1, 22)),
            now=at(2024, 1, 15, hour=12),
        )
        self.assertTrue(result.is_ok())
        self.assertIsNone(result.unwrap())

    def test_trial_end_well_before_end_is_kept(self):
        result = calculate_next_payment(
            snapshot(start=at(2024, 1, 15), trial_end=at(2024, 1, 22), end=at(2024, 1, 23)),
            now=at(2024, 1, 15, hour=12),
        )
        self.assertEqual(result.unwrap(), at(2024, 1, 22))

    def test_candidate_within_two_hours_moves_one_more_interval(self):
        result = calculate_next_payment(
            snapshot(start=at(2024, 1, 15), last_payment=at(2024, 1, 15)), now=at(2024, 2, 15, hour=9)
        )
        self.assertEqual(result.unwrap(), at(2024, 3, 15))

    def test_synchronised_subscription_keeps_stored_cadence(self):
        dates = {"start": at(2024, 1, 1), "last_payment": at(2024, 1, 10), "next_payment": at(2024, 2, 1)}

        synced = calculate_next_payment(snapshot(synchronised=True, **dates), now=at(2024, 2, 3))
        unsynced = calculate_next_payment(snapshot(**dates), now=at(2024, 2, 3))

        self.assertEqual(synced.unwrap(), at(2024, 3, 1))
        self.assertEqual(unsynced.unwrap(), at(2024, 2, 10))

    def test_trial_adjacent_subscription_anchors_on_stored_next_payment(self):
        dates = {
            "start": at(2024, 1, 1),
            "trial_end": at(2024, 1, 20),
            "last_payment": at(2024, 1, 1),
            "next_payment": at(2024, 1, 20),
        }

        first_cycle = calculate_next_payment(snapshot(payments=1, **dates), now=at(2024, 1, 22))
        later_cycle = calculate_next_payment(snapshot(payments=2, **dates), now=at(2024, 1, 22))

        self.assertEqual(first_cycle.unwrap(), at(2024, 2, 20))
        self.assertEqual(later_cycle.unwrap(), at(2024, 2, 1))

    def test_stored_next_payment_after_start_is_used_without_last_payment(self):
        result = calculate_next_payment(
            snapshot(start=at(2024, 1, 15), next_payment=at(2024, 1, 20)), now=at(2024, 1, 18)
        )
        self.assertEqual(result.unwrap(), at(2024, 2, 20))

    def test_no_payment_when_end_comes_first(self):
        result = calculate_next_payment(
            snapshot(start=at(2024, 1, 15), end=at(2024, 2, 16, hour=8)), now=at(2024, 1, 15)
        )
        self.assertTrue(result.is_ok())
        self.assertIsNone(result.unwrap())

    def test_payment_a_day_before_end_is_kept(self):
        result = calculate_next_payment(
            snapshot(start=at(2024, 1, 15), end=at(2024, 2, 16, hour=10)), now=at(2024, 1, 15)
        )
        self.assertEqual(result.unwrap(), at(2024, 2, 15))

    def test_missing_start_is_an_error(self):
        result = calculate_next_payment(snapshot(), now=at(2024, 1, 15))
        self.assertTrue(result.is_err())
        self.assertIn("no start date", result.unwrap_err())

    def test_catch_up_loop_is_bounded(self):
        daily = BillingTerms(period="day", interval=1)
        result = calculate_next_payment(snapshot(terms=daily, start=at(2000, 1, 1)), now=at(2024, 1, 1))
        self.assertTrue(result.is_err())
        self.assertIn("3000", result.unwrap_err())


class DerivedDateTests(SimpleTestCase):
    """Trial end, end of prepaid term and calculate_date() dispatch"""

    def test_trial_end_unset_after_two_payments(self):
        data = snapshot(payments=2, start=at(2024, 1, 1), trial_end=at(2024, 2, 1))
        self.assertIsNone(calculate_trial_end(data, at(2024, 1, 10)))

    def test_trial_end_is_recomputed_before_second_payment(self):
        data = snapshot(payments=1, start=at(2024, 1, 1), trial_end=at(2024, 2, 1))
        self.assertEqual(calculate_trial_end(data, at(2024, 1, 10)), at(2024, 2, 1))

    def test_prepaid_term_ends_at_future_next_payment(self):
        data = snapshot(start=at(2024, 1, 15), next_payment=at(2024, 2, 15))
        self.assertEqual(calculate_end_of_prepaid_term(data, at(2024, 1, 20)), at(2024, 2, 15))

    def test_prepaid_term_without_next_payment_ends_now(self):
        data = snapshot(start=at(2024, 1, 15), end=at(2024, 3, 1))
        self.assertEqual(calculate_end_of_prepaid_term(data, at(2024, 1, 20)), at(2024, 1, 20))

    def test_prepaid_term_with_past_next_payment_ends_at_future_end(self):
        data = snapshot(start=at(2024, 1, 15), next_payment=at(2024, 1, 18), end=at(2024, 3, 1))
        self.assertEqual(calculate_end_of_prepaid_term(data, at(2024, 1, 20)), at(2024, 3, 1))

    def test_calculate_date_dispatch(self):
        data = snapshot(start=at(2024, 1, 15), last_payment=at(2024, 1, 15))
        now = at(2024, 1, 15)

        self.assertEqual(calculate_date("next_payment", data, now).unwrap(), at(2024, 2, 15))
        self.assertEqual(calculate_date("end_of_prepaid_term", data, now).unwrap(), now)
        self.assertTrue(calculate_date("cancelled", data, now).is_err())


class DateSetValidationTests(SimpleTestCase):
    """validate_date_set() ordering rules; a batch is accepted or rejected whole"""

    def setUp(self):
        self.current = Schedule(
            start=at(2024, 1, 15),
            last_payment=at(2024, 1, 15),
            next_payment=at(2024, 2, 15),
        )

    def assertRejected(self, proposed, date_type):
        result = validate_date_set(proposed, self.current)
        self.assertTrue(result.is_err(), f"{proposed} should be rejected")
        error = result.unwrap_err()
        self.assertIsInstance(error, DateOrderingError)
        self.assertEqual(error.date_type, date_type)
        return error

    def test_valid_batch_is_merged(self):
        result = validate_date_set({"trial_end": at(2024, 2, 1), "end": at(2024, 6, 15)}, self.current)

        merged = result.unwrap()
        self.assertEqual(merged.trial_end, at(2024, 2, 1))
        self.assertEqual(merged.end, at(2024, 6, 15))
        self.assertEqual(merged.next_payment, at(2024, 2, 15))

    def test_none_deletes_a_date(self):
        merged = validate_date_set({"next_payment": None}, self.current).unwrap()
        self.assertIsNone(merged.next_payment)

    def test_next_payment_must_not_precede_trial_end(self):
        error = self.assertRejected({"trial_end": at(2024, 2, 20)}, "next_payment")
        self.assertEqual(error.other_date_type, "trial_end")
        self.assertEqual(str(error), "The next payment date must occur after the trial end date.")

    def test_trial_end_may_equal_next_payment(self):
        self.assertTrue(validate_date_set({"trial_end": at(2024, 2, 15)}, self.current).is_ok())

    def test_end_must_be_strictly_after_next_payment(self):
        self.assertRejected({"end": at(2024, 2, 15)}, "end")

    def test_next_payment_must_be_strictly_after_start(self):
        self.assertRejected({"next_payment": at(2024, 1, 15)}, "next_payment")

    def test_end_must_not_precede_last_payment(self):
        self.assertRejected({"next_payment": None, "end": at(2024, 1, 14)}, "end")

    def test_start_and_last_payment_cannot_be_deleted(self):
        self.assertRejected({"start": None}, "start")
        self.assertRejected({"last_payment": None}, "last_payment")

    def test_last_payment_cannot_move_backwards(self):
        self.assertRejected({"last_payment": at(2024, 1, 14)}, "last_payment")

    def test_naive_and_unknown_dates_are_rejected(self):
        self.assertRejected({"end": datetime(2024, 6, 1)}, "end")
        self.assertRejected({"renewal": at(2024, 6, 1)}, "renewal")

    def test_failed_batch_changes_nothing(self):
        proposed = {"end": at(2024, 6, 15), "next_payment": at(2024, 1, 1)}
        self.assertTrue(validate_date_set(proposed, self.current).is_err())
        self.assertIsNone(self.current.end)

    def test_changed_dates(self):
        later = self.current.with_dates(next_payment=at(2024, 3, 15), end=None)
        self.assertEqual(self.current.changed_dates(later), {"next_payment": at(2024, 3, 15)})
        self.assertEqual(
            self.current.changed_dates(self.current.with_dates(end=at(2024, 6, 1) + timedelta(days=1))),
            {"end": at(2024, 6, 2)},
        )
