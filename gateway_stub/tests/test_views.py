import json

from django.test import TestCase

from gateway_stub.models import GatewayStubPayment


class GatewayStubViewTests(TestCase):
    def create(self, **body):
        payload = {"price_amount": 100, "pay_currency": "USDTTRC20", "order_id": "order-1"}
        payload.update(body)
        return self.client.post("/stub/gateway/payment", data=json.dumps(payload), content_type="application/json")

    def test_create_and_read_payment(self):
        created = self.create()

        self.assertEqual(created.status_code, 201)
        data = created.json()
        self.assertEqual(data["payment_status"], "waiting")
        self.assertEqual(data["pay_currency"], "usdttrc20")
        self.assertEqual(data["price_amount"], "100.00")
        self.assertTrue(data["expiration_estimate_date"].endswith("Z"))

        fetched = self.client.get(f"/stub/gateway/payment/{data['payment_id']}")
        self.assertEqual(fetched.json()["order_id"], "order-1")

    def test_set_status_fills_actually_paid_on_confirmation(self):
        payment_id = self.create().json()["payment_id"]

        response = self.client.post(
            f"/stub/gateway/payment/{payment_id}/status",
            data=json.dumps({"status": "finished"}),
            content_type="application/json",
        )

        self.assertEqual(response.json()["payment_status"], "finished")
        payment = GatewayStubPayment.objects.get(payment_id=payment_id)
        self.assertEqual(payment.actually_paid, payment.pay_amount)

    def test_rejects_unknown_status_and_missing_fields(self):
        payment_id = self.create().json()["payment_id"]

        bad_status = self.client.post(
            f"/stub/gateway/payment/{payment_id}/status",
            data=json.dumps({"status": "teleported"}),
            content_type="application/json",
        )
        missing = self.create(pay_currency="")

        self.assertEqual(bad_status.status_code, 400)
        self.assertEqual(missing.status_code, 400)

    def test_non_numeric_actually_paid_is_400(self):
        payment_id = self.create().json()["payment_id"]

        response = self.client.post(
            f"/stub/gateway/payment/{payment_id}/status",
            data=json.dumps({"status": "partially_paid", "actually_paid": "lots"}),
            content_type="application/json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(GatewayStubPayment.objects.get(payment_id=payment_id).status, "waiting")

    def test_unknown_payment_is_404(self):
        self.assertEqual(self.client.get("/stub/gateway/payment/PAY-nope").status_code, 404)
