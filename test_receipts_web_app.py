import unittest

from amounts import Money
from receipts_web_app import create_app


class ReceiptsWebAppTests(unittest.TestCase):
    def setUp(self):
        self.sessions = {}
        self.app = create_app(currency="GBP", sessions_override=self.sessions)
        self.client = self.app.test_client()

    def _state(self):
        self.assertEqual(len(self.sessions), 1)
        return next(iter(self.sessions.values()))

    def _form(self, overrides=None, extra=None):
        """Field values as the rendered page would submit them."""
        state = self._state()
        data = {
            "transaction[date]": state.values["date"],
            "transaction[description]": state.values["description"],
            "transaction[amount]": state.values["amount"],
        }
        sort, drop = [], []
        for row in state.rows:
            prefix = f"transaction[receipts][{row.index}]"
            data[f"{prefix}[id]"] = row.id
            data[f"{prefix}[number]"] = row.number
            data[f"{prefix}[amount]"] = row.amount_text
            sort.append(str(row.index))
            if row.removed:
                drop.append(str(row.index))
        data.update(overrides or {})
        data["transaction[receipts_sort][]"] = sort
        data["transaction[receipts_drop][]"] = drop
        for key, value in (extra or {}).items():
            data[key] = data.get(key, []) + [value]
        return data

    def test_index_renders_seeded_transaction(self):
        resp = self.client.get("/")
        self.assertEqual(resp.status_code, 200)
        self.assertIn(b"Test transaction", resp.data)
        self.assertIn(b"Remaining to allocate", resp.data)
        self.assertIn("£90.00".encode(), resp.data)
        self.assertIn(b'value="100.00"', resp.data)
        self.assertEqual(self.app.config["_CURRENCY"], "GBP")

    def test_update_recomputes_remaining(self):
        self.client.get("/")
        resp = self.client.post("/update", data=self._form({"transaction[receipts][0][amount]": "60"}))
        self.assertEqual(resp.status_code, 200)
        self.assertIn("£40.00".encode(), resp.data)
        self.assertEqual(self._state().remaining, Money(40_00, "GBP"))

    def test_remove_seeded_receipt_and_undo(self):
        self.client.get("/")
        resp = self.client.post("/update", data=self._form(extra={"transaction[receipts_drop][]": "0"}))
        self.assertIn("£100.00".encode(), resp.data)
        self.assertIn(b"(removed)", resp.data)
        self.assertIn(b"Undo", resp.data)

        resp = self.client.post("/update", data=self._form(extra={"transaction[receipts_restore][]": "0"}))
        self.assertIn("£90.00".encode(), resp.data)
        self.assertNotIn(b"(removed)", resp.data)

    def test_add_then_remove_new_receipt(self):
        self.client.get("/")
        self.client.post("/update", data=self._form(extra={"transaction[receipts_sort][]": "add"}))
        self.assertEqual(len(self._state().rows), 2)
        self.client.post("/update", data=self._form({"transaction[receipts][1][number]": "2", "transaction[receipts][1][amount]": "5"}))
        self.assertEqual(self._state().remaining, Money(85_00, "GBP"))
        self.client.post("/update", data=self._form(extra={"transaction[receipts_drop][]": "1"}))
        self.assertEqual(self._state().remaining, Money(90_00, "GBP"))

    def test_malformed_amount_shows_error_and_keeps_balance(self):
        self.client.get("/")
        resp = self.client.post("/update", data=self._form({"transaction[receipts][0][amount]": "abc"}))
        self.assertEqual(resp.status_code, 200)
        self.assertIn(b"Amount is invalid", resp.data)
        self.assertIn("£90.00".encode(), resp.data)

    def test_currency_mismatch_shows_error(self):
        self.client.get("/")
        resp = self.client.post("/update", data=self._form({"transaction[receipts][0][amount]": "$10"}))
        self.assertIn(b"Currency mismatch", resp.data)

    def test_save_valid_form_commits(self):
        self.client.get("/")
        resp = self.client.post(
            "/save",
            data=self._form({"transaction[description]": "Groceries", "transaction[receipts][0][amount]": "100"}),
            follow_redirects=True,
        )
        self.assertEqual(resp.status_code, 200)
        self.assertIn(b"Transaction saved.", resp.data)
        state = self._state()
        self.assertEqual(state.transaction.description, "Groceries")
        self.assertEqual(state.transaction.receipts[0].amount, Money(100_00, "GBP"))
        self.assertTrue(state.balanced)

    def test_save_invalid_form_rerenders_with_errors(self):
        self.client.get("/")
        resp = self.client.post("/save", data=self._form({"transaction[description]": ""}))
        self.assertEqual(resp.status_code, 200)
        self.assertIn(b"Please fix the errors below.", resp.data)
        self.assertIn(b"Description can&#39;t be blank", resp.data)
        self.assertEqual(self._state().transaction.description, "Test transaction")

    def test_save_drops_removed_receipts(self):
        self.client.get("/")
        self.client.post("/save", data=self._form(extra={"transaction[receipts_drop][]": "0"}), follow_redirects=True)
        self.assertEqual(self._state().transaction.receipts, ())
        self.assertEqual(self._state().remaining, Money(100_00, "GBP"))

    def test_reset_reseeds(self):
        self.client.get("/")
        self.client.post("/update", data=self._form({"transaction[amount]": "5"}))
        resp = self.client.post("/reset", follow_redirects=True)
        self.assertIn(b"Form reset.", resp.data)
        self.assertEqual(self._state().remaining, Money(90_00, "GBP"))

    def test_remaining_json(self):
        self.client.get("/")
        self.client.post("/update", data=self._form({"transaction[receipts][0][amount]": "100"}))
        resp = self.client.get("/remaining")
        self.assertEqual(
            resp.get_json(),
            {"remaining": "£0.00", "currency": "GBP", "minor_units": 0, "balanced": True, "error": None},
        )

    def test_sessions_are_isolated(self):
        other = self.app.test_client()
        self.client.get("/")
        other.get("/")
        self.assertEqual(len(self.sessions), 2)
        ids = {s.transaction.id for s in self.sessions.values()}
        self.assertEqual(len(ids), 2)

    def test_malformed_field_names_do_not_crash(self):
        self.client.get("/")
        payloads = [
            {"transaction[receipts][0][amount][x]": "1"},
            {"transaction[receipts][0][id][]": "1"},
            {"transaction[receipts][0][number][]": "1"},
            {"transaction[receipts][²][amount]": "1"},
            {"transaction[amount][x]": "1", "transaction[receipts_sort][x]": "1"},
        ]
        for data in payloads:
            for path in ("/update", "/save"):
                with self.subTest(path=path, data=data):
                    resp = self.client.post(path, data=data)
                    self.assertIn(resp.status_code, (200, 302))

    def test_sessions_are_capped_least_recent_first(self):
        sessions = {}
        app = create_app(currency="GBP", max_sessions=2, sessions_override=sessions)
        first, second, third = app.test_client(), app.test_client(), app.test_client()
        first.get("/")
        second.get("/")
        first.post("/update", data={"transaction[amount]": "50"})
        third.get("/")
        self.assertEqual(len(sessions), 2)
        remaining = {str(s.remaining) for s in sessions.values()}
        self.assertEqual(remaining, {"£40.00", "£90.00"})
        self.assertEqual(first.get("/remaining").get_json()["remaining"], "£40.00")

    def test_unsupported_currency_rejected(self):
        with self.assertRaises(ValueError):
            create_app(currency="XXX")


if __name__ == "__main__":
    unittest.main()
