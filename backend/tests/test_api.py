from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from coursebilling.db.models import TransactionStatus
from coursebilling.main import create_app

PREFIX = "/api/v1"


@pytest.fixture
def client(container):
    with TestClient(create_app(container=container)) as client:
        yield client


def subscribe(client, user_id, course_id, **extra):
    body = {"user_id": user_id, "course_id": course_id, "plan_type": "MONTHLY", "amount": "19.99"}
    body.update(extra)
    return client.post(f"{PREFIX}/subscriptions", json=body)


class TestSubscriptionsApi:
    def test_create_then_duplicate(self, client, user_id, course_id, card_method_id):
        created = subscribe(client, user_id, course_id)
        duplicate = subscribe(client, user_id, course_id)

        assert created.status_code == 201
        assert created.json()["status"] == "ACTIVE"
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["code"] == "DUPLICATE_SUBSCRIPTION"

    def test_declined_first_charge_is_a_gateway_error(self, client, card_provider, user_id, course_id, card_method_id):
        card_provider.decline_next("card_declined")

        response = subscribe(client, user_id, course_id)

        assert response.status_code == 502
        assert response.json()["error"]["details"]["reason_code"] == "card_declined"

    def test_cancel_and_list(self, client, user_id, course_id, card_method_id):
        subscription_id = subscribe(client, user_id, course_id, with_trial=True).json()["id"]

        canceled = client.post(f"{PREFIX}/subscriptions/{subscription_id}/cancel", json={"user_id": user_id})
        listed = client.get(f"{PREFIX}/users/{user_id}/subscriptions")

        assert canceled.status_code == 200
        assert canceled.json()["status"] == "CANCELED"
        [summary] = listed.json()
        assert summary["course_title"] == "Distributed Systems"
        assert summary["payment_method"] == "visa ****4242"
        assert summary["subscription"]["id"] == subscription_id

    def test_cancel_by_another_user_is_not_found(self, client, user_id, other_user_id, course_id, card_method_id):
        subscription_id = subscribe(client, user_id, course_id).json()["id"]

        response = client.post(f"{PREFIX}/subscriptions/{subscription_id}/cancel", json={"user_id": other_user_id})

        assert response.status_code == 404

    def test_invalid_body_is_a_validation_error(self, client, user_id, course_id):
        response = subscribe(client, user_id, course_id, plan_type="WEEKLY", amount="-1")

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestPaymentsApi:
    def test_pay_and_refund(self, client, user_id, course_id, card_method_id):
        paid = client.post(f"{PREFIX}/payments", json={"user_id": user_id, "course_id": course_id, "amount": "49.99"})
        assert paid.status_code == 201
        txn = paid.json()
        assert txn["status"] == "COMPLETED"
        assert txn["metadata"]["provider"] == "card"

        refund = client.post(f"{PREFIX}/payments/{txn['id']}/refund")
        assert refund.status_code == 200
        assert refund.json()["reference"] == f"REFUND-{txn['reference']}"

        again = client.post(f"{PREFIX}/payments/{txn['id']}/refund")
        assert again.status_code == 409

        history = client.get(f"{PREFIX}/users/{user_id}/transactions").json()
        assert len(history) == 2

    def test_payment_methods_round_trip(self, client, user_id):
        card = {"number": "4242424242424242", "brand": "visa", "exp_month": 12, "exp_year": 2030}
        added = client.post(f"{PREFIX}/users/{user_id}/payment-methods", json={"type": "CREDIT_CARD", "details": card})
        assert added.status_code == 201
        assert added.json()["is_default"] is True
        assert "encrypted_token" not in added.json()

        rejected = client.post(
            f"{PREFIX}/users/{user_id}/payment-methods",
            json={"type": "CREDIT_CARD", "details": {"reject": True}},
        )
        assert rejected.status_code == 422
        assert rejected.json()["error"]["code"] == "INSTRUMENT_REJECTED"

        removed = client.delete(f"{PREFIX}/users/{user_id}/payment-methods/{added.json()['id']}")
        assert removed.status_code == 204
        assert client.get(f"{PREFIX}/users/{user_id}/payment-methods").json() == []


class TestWebhooksApi:
    def test_signed_delivery_is_applied(self, client, container, sign, user_id, course_id):
        with container.store.unit_of_work() as uow:
            uow.transactions.create(
                user_id=user_id,
                course_id=course_id,
                amount=Decimal("49.99"),
                currency="USD",
                status=TransactionStatus.PENDING,
                reference="TXN-feedface-1717228800000",
                meta={},
            )
        body, signature = sign({
            "id": "evt_api_1",
            "type": "payment.succeeded",
            "data": {"reference": "TXN-feedface-1717228800000"},
        })

        response = client.post(
            f"{PREFIX}/webhooks/payments",
            content=body,
            headers={"X-Callback-Signature": signature, "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"
        assert container.payments.list_transactions(user_id)[0].status == TransactionStatus.COMPLETED

    def test_bad_signature_is_401(self, client, sign):
        body, _ = sign({"id": "evt_api_2", "type": "payment.succeeded", "data": {"reference": "x"}})

        response = client.post(f"{PREFIX}/webhooks/payments", content=body, headers={"X-Callback-Signature": "00"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"
        assert response.json()["error"]["event_id"] == "evt_api_2"

    def test_malformed_is_400(self, client, sign):
        body, signature = sign({"type": "payment.succeeded"})

        response = client.post(f"{PREFIX}/webhooks/payments", content=body, headers={"X-Callback-Signature": signature})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MALFORMED_PAYLOAD"

    def test_unknown_reference_is_503_then_stats(self, client, sign):
        body, signature = sign({"id": "evt_api_3", "type": "payment.failed", "data": {"reference": "TXN-nope"}})

        response = client.post(f"{PREFIX}/webhooks/payments", content=body, headers={"X-Callback-Signature": signature})
        retried = client.post(f"{PREFIX}/webhooks/retry")
        stats = client.get(f"{PREFIX}/webhooks/stats")

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "WEBHOOK_PROCESSING_FAILED"
        assert retried.json()["retried"] == 1
        assert retried.json()["applied"] == 0
        assert stats.status_code == 200
        assert stats.json()["unprocessed"] == 1


class TestOperationalApi:
    def test_health(self, client):
        response = client.get(f"{PREFIX}/health")

        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "healthy"
        assert payload["environment"] == "testing"
        assert payload["services"]["database"] == "healthy"
        assert payload["scheduler"]["running"] is False

    def test_analytics_endpoints(self, client, user_id, course_id, card_method_id):
        subscribe(client, user_id, course_id)

        payments = client.get(f"{PREFIX}/analytics/payments")
        subscriptions = client.get(f"{PREFIX}/analytics/subscriptions", params={"user_id": user_id})
        backwards = client.get(
            f"{PREFIX}/analytics/disputes",
            params={"start": "2024-02-01T00:00:00", "end": "2024-01-01T00:00:00"},
        )

        assert payments.status_code == 200
        assert payments.json()["total_transactions"] == 1
        assert subscriptions.json()["active_subscriptions"] == 1
        assert backwards.status_code == 422

    def test_root_lists_versions(self, client):
        response = client.get("/api/")

        assert response.status_code == 200
        assert "subscriptions" in response.json()["api_versions"]["v1"]["endpoints"]
