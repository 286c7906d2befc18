"""Integration tests for plan catalog and subscription endpoints."""

from datetime import UTC, datetime

from allnimall.auth import AuthenticatedUser, get_current_user
from allnimall.config import get_settings
from allnimall.main import attach_services
from allnimall.models.billing import Plan, Subscription, SubscriptionStatus


async def _fake_user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-1", email="owner@petshop.test")


def _wire(client, plans: list[Plan]):
    get_settings.cache_clear()
    attach_services(client.app, get_settings(), None, None)
    client.app.dependency_overrides[get_current_user] = _fake_user
    repo = client.app.state.billing_service.repository
    for plan in plans:
        repo.plans[plan.id] = plan
    return repo


class TestPlans:
    def test_lists_active_plans_in_order(self, client, basic_plan, pro_plan):
        retired = Plan(id="plan-old", name="Old", price=1, is_active=False)
        _wire(client, [pro_plan, basic_plan, retired])

        response = client.get("/api/v1/plans")

        assert response.status_code == 200
        assert [p["id"] for p in response.json()] == ["plan-basic", "plan-pro"]


class TestSubscriptions:
    def test_create_starts_trial(self, client, basic_plan):
        _wire(client, [basic_plan])

        response = client.post("/api/v1/subscriptions", json={"plan_id": "plan-basic"})

        assert response.status_code == 201
        assert response.json()["status"] == "trial"
        me = client.get("/api/v1/subscriptions/me")
        assert me.status_code == 200
        assert me.json()["id"] == response.json()["id"]

    def test_second_subscription_conflicts(self, client, basic_plan):
        _wire(client, [basic_plan])
        client.post("/api/v1/subscriptions", json={"plan_id": "plan-basic"})

        response = client.post("/api/v1/subscriptions", json={"plan_id": "plan-basic"})

        assert response.status_code == 409

    def test_unknown_plan_is_404(self, client):
        _wire(client, [])

        response = client.post("/api/v1/subscriptions", json={"plan_id": "plan-nope"})

        assert response.status_code == 404

    def test_me_without_subscription_is_404(self, client):
        _wire(client, [])

        assert client.get("/api/v1/subscriptions/me").status_code == 404

    def test_cancel_twice_succeeds(self, client, basic_plan):
        _wire(client, [basic_plan])
        created = client.post("/api/v1/subscriptions", json={"plan_id": "plan-basic"}).json()

        first = client.post(
            f"/api/v1/subscriptions/{created['id']}/cancel", json={"reason": "Closing"}
        )
        second = client.post(f"/api/v1/subscriptions/{created['id']}/cancel", json={})

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["status"] == "cancelled"
        assert second.json()["cancellation_reason"] == "Closing"

    def test_cannot_cancel_someone_elses_subscription(self, client, basic_plan):
        repo = _wire(client, [basic_plan])
        repo.subscriptions["sub-x"] = Subscription(
            id="sub-x",
            user_id="user-2",
            plan_id="plan-basic",
            status=SubscriptionStatus.ACTIVE,
            start_date=datetime(2026, 3, 1, tzinfo=UTC),
        )

        response = client.post("/api/v1/subscriptions/sub-x/cancel", json={})

        assert response.status_code == 404
        assert repo.subscriptions["sub-x"].status == SubscriptionStatus.ACTIVE


class TestChangePlan:
    def test_switch_applies_new_limits(self, client, basic_plan, pro_plan):
        _wire(client, [basic_plan, pro_plan])
        created = client.post("/api/v1/subscriptions", json={"plan_id": "plan-basic"}).json()

        response = client.put(f"/api/v1/subscriptions/{created['id']}", json={"plan_id": "plan-pro"})

        assert response.status_code == 200
        assert response.json()["plan_id"] == "plan-pro"
        records = client.app.state.usage_ledger.repository.records
        assert records[("user-1", "store_management")].usage_limit == 10
        assert ("user-1", "reporting") in records

    def test_over_capacity_downgrade_is_409(self, client, basic_plan, pro_plan):
        repo = _wire(client, [basic_plan, pro_plan])
        created = client.post("/api/v1/subscriptions", json={"plan_id": "plan-pro"}).json()
        records = client.app.state.usage_ledger.repository.records
        records[("user-1", "store_management")].usage_count = 3

        response = client.put(
            f"/api/v1/subscriptions/{created['id']}", json={"plan_id": "plan-basic"}
        )

        assert response.status_code == 409
        assert repo.subscriptions[created["id"]].plan_id == "plan-pro"

    def test_unknown_target_plan_is_404(self, client, basic_plan):
        _wire(client, [basic_plan])
        created = client.post("/api/v1/subscriptions", json={"plan_id": "plan-basic"}).json()

        response = client.put(
            f"/api/v1/subscriptions/{created['id']}", json={"plan_id": "plan-nope"}
        )

        assert response.status_code == 404

    def test_plan_id_is_required(self, client, basic_plan):
        _wire(client, [basic_plan])
        created = client.post("/api/v1/subscriptions", json={"plan_id": "plan-basic"}).json()

        assert client.put(f"/api/v1/subscriptions/{created['id']}", json={}).status_code == 422

    def test_cannot_switch_someone_elses_subscription(self, client, basic_plan, pro_plan):
        repo = _wire(client, [basic_plan, pro_plan])
        repo.subscriptions["sub-x"] = Subscription(
            id="sub-x",
            user_id="user-2",
            plan_id="plan-basic",
            status=SubscriptionStatus.ACTIVE,
            start_date=datetime(2026, 3, 1, tzinfo=UTC),
        )

        response = client.put("/api/v1/subscriptions/sub-x", json={"plan_id": "plan-pro"})

        assert response.status_code == 404
        assert repo.subscriptions["sub-x"].plan_id == "plan-basic"
