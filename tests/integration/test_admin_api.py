"""Integration tests for the admin API (/admin/store/*)."""

from decimal import Decimal

import pytest
from services.commerce_service.models import DeliveryMethod, OrderStatus
from tests.conftest import make_admin_user, make_auth_user, override_auth
from tests.factories import seed_order, seed_points, seed_product, seed_user

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _refund_request(client, app, user, order, item_id, quantity=1):
    with override_auth(app, make_auth_user(user.id)):
        response = await client.post(
            f"/store/orders/{order.id}/refunds",
            json={"items": [{"order_item_id": item_id, "quantity": quantity}]},
        )
    assert response.status_code == 201
    return response.json()["id"]


# ---------------------------------------------------------------------------
# Access control
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_customers_cannot_use_admin_routes(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)

    with override_auth(commerce_app, make_auth_user(user.id)):
        response = await commerce_client.get("/admin/store/refunds")

    assert response.status_code == 403
    assert response.json()["detail"] == "Admin privileges required"


# ---------------------------------------------------------------------------
# Refund review
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_admin_approves_refund(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session, quantity=3)
    order, items = await seed_order(db_session, user, [(variant, 2, "20")])
    request_id = await _refund_request(commerce_client, commerce_app, user, order, items[0].id)

    with override_auth(commerce_app, make_admin_user()):
        pending = await commerce_client.get("/admin/store/refunds", params={"status": "pending"})
        approved = await commerce_client.post(
            f"/admin/store/refunds/{request_id}/approve",
            json={"restock": True, "note": "Faulty strap"},
        )
        detail = await commerce_client.get(f"/admin/store/refunds/{request_id}")
        stock = await commerce_client.get(f"/admin/store/inventory/variants/{variant.id}")

    assert [r["id"] for r in pending.json()] == [request_id]

    assert approved.status_code == 200
    outcome = approved.json()
    assert outcome["status"] == "completed"
    assert Decimal(outcome["approved_amount"]) == Decimal("20.00")
    assert outcome["gateway_refund_id"] == "MANUAL"
    assert outcome["full_refund"] is False
    assert outcome["restocked"] is True

    postings = detail.json()["postings"]
    assert len(postings) == 1
    assert postings[0]["gateway"] == "manual"
    assert stock.json()["quantity"] == 4


@pytest.mark.asyncio
@pytest.mark.integration
async def test_approve_rejects_amount_above_request(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, items = await seed_order(db_session, user, [(variant, 2, "20")])
    request_id = await _refund_request(commerce_client, commerce_app, user, order, items[0].id)

    with override_auth(commerce_app, make_admin_user()):
        response = await commerce_client.post(
            f"/admin/store/refunds/{request_id}/approve", json={"amount": "25.00"}
        )

    assert response.status_code == 400
    assert response.json()["detail"] == "Refund amount cannot exceed requested amount."


@pytest.mark.asyncio
@pytest.mark.integration
async def test_reject_needs_a_note(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, items = await seed_order(db_session, user, [(variant, 1, "20")])
    request_id = await _refund_request(commerce_client, commerce_app, user, order, items[0].id)

    with override_auth(commerce_app, make_admin_user()):
        blank = await commerce_client.post(
            f"/admin/store/refunds/{request_id}/reject", json={"note": "   "}
        )
        rejected = await commerce_client.post(
            f"/admin/store/refunds/{request_id}/reject", json={"note": "Worn in the pool"}
        )
        again = await commerce_client.post(f"/admin/store/refunds/{request_id}/approve", json={})

    assert blank.status_code == 422
    assert rejected.json()["status"] == "rejected"
    assert rejected.json()["admin_note"] == "Worn in the pool"
    assert again.status_code == 400


@pytest.mark.asyncio
@pytest.mark.integration
async def test_admin_refund_without_request(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, _ = await seed_order(db_session, user, [(variant, 1, "50")])

    with override_auth(commerce_app, make_admin_user()):
        response = await commerce_client.post(
            f"/admin/store/orders/{order.id}/refunds",
            json={"amount": "50", "reason": "Never arrived"},
        )
        refreshed = await commerce_client.get(f"/admin/store/refunds/{response.json()['request_id']}")

    assert response.status_code == 201
    assert response.json()["full_refund"] is True
    assert refreshed.json()["flow"] == "admin"
    with override_auth(commerce_app, make_auth_user(user.id)):
        order_view = await commerce_client.get(f"/store/orders/{order.id}")
    assert order_view.json()["payment_status"] == "refunded"
    assert order_view.json()["status"] == "returned"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_unknown_refund_is_404(commerce_app, commerce_client):
    with override_auth(commerce_app, make_admin_user()):
        response = await commerce_client.get("/admin/store/refunds/424242")
    assert response.status_code == 404
    assert response.json() == {"detail": "Refund request not found", "error": "NotFoundError"}
    assert response.headers["X-Request-ID"]


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_return_review_and_completion(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, _ = await seed_order(db_session, user, [(variant, 1, "20")])

    with override_auth(commerce_app, make_auth_user(user.id)):
        await commerce_client.post(
            f"/store/orders/{order.id}/returns", json={"reason": "Too tight"}
        )

    with override_auth(commerce_app, make_admin_user()):
        early = await commerce_client.post(
            f"/admin/store/orders/{order.id}/returns/complete", json={}
        )
        approved = await commerce_client.post(
            f"/admin/store/orders/{order.id}/returns/review", json={"approve": True}
        )
        completed = await commerce_client.post(
            f"/admin/store/orders/{order.id}/returns/complete", json={"note": "Received"}
        )
        listing = await commerce_client.get("/admin/store/returns", params={"status": "completed"})

    assert early.status_code == 400
    assert approved.json()["status"] == "approved"
    assert completed.json()["status"] == "completed"
    assert len(listing.json()) == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_unknown_status_filter_is_400(commerce_app, commerce_client):
    with override_auth(commerce_app, make_admin_user()):
        response = await commerce_client.get("/admin/store/returns", params={"status": "lost"})
    assert response.status_code == 400


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_status_moves_one_step_at_a_time(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, _ = await seed_order(
        db_session, user, [(variant, 1, "20")], status=OrderStatus.PROCESSING
    )

    with override_auth(commerce_app, make_admin_user()):
        packing = await commerce_client.patch(
            f"/admin/store/orders/{order.id}/status", json={"status": "packing"}
        )
        jump = await commerce_client.patch(
            f"/admin/store/orders/{order.id}/status", json={"status": "delivered"}
        )

    assert packing.status_code == 200
    assert packing.json()["status"] == "packing"
    assert jump.status_code == 400


@pytest.mark.asyncio
@pytest.mark.integration
async def test_admin_can_waive_delivery_fee(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, _ = await seed_order(
        db_session,
        user,
        [(variant, 1, "20")],
        status=OrderStatus.PROCESSING,
        delivery_method=DeliveryMethod.PICKUP,
        shipping_address=None,
    )

    with override_auth(commerce_app, make_admin_user()):
        response = await commerce_client.patch(
            f"/admin/store/orders/{order.id}/delivery",
            json={
                "delivery_method": "delivery",
                "shipping_address": "2 Lane Rope Rd",
                "waive_fee": True,
            },
        )

    assert response.status_code == 200
    body = response.json()
    assert body["delivery_method"] == "delivery"
    assert Decimal(body["shipping_amount"]) == Decimal("0.00")
    assert Decimal(body["total_amount"]) == Decimal("20.00")


@pytest.mark.asyncio
@pytest.mark.integration
async def test_best_sellers_report(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    goggles, goggles_variant = await seed_product(db_session, name="Goggles")
    _, cap_variant = await seed_product(db_session, name="Cap")
    await seed_order(db_session, user, [(goggles_variant, 3, "20"), (cap_variant, 1, "10")])

    with override_auth(commerce_app, make_admin_user()):
        response = await commerce_client.get("/admin/store/reports/best-sellers")

    rows = response.json()
    assert rows[0]["product_id"] == goggles.id
    assert rows[0]["total_sold"] == 3


# ---------------------------------------------------------------------------
# Loyalty
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_points_adjustment_and_verification(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    await seed_points(db_session, user.id, 30)

    with override_auth(commerce_app, make_admin_user()):
        adjusted = await commerce_client.post(
            f"/admin/store/loyalty/{user.id}/adjust",
            json={"points_change": 50, "note": "goodwill"},
        )
        zero = await commerce_client.post(
            f"/admin/store/loyalty/{user.id}/adjust", json={"points_change": 0}
        )
        overdraw = await commerce_client.post(
            f"/admin/store/loyalty/{user.id}/adjust", json={"points_change": -500}
        )
        verify = await commerce_client.get(f"/admin/store/loyalty/{user.id}/verify")
        issued = await commerce_client.get("/admin/store/loyalty/issued")

    assert adjusted.status_code == 201
    assert adjusted.json()["balance_after"] == 80
    assert adjusted.json()["reason"].startswith("admin adjustment")
    assert zero.status_code == 422
    assert overdraw.status_code == 400
    assert verify.json() == {
        "user_id": user.id,
        "cached_balance": 80,
        "ledger_balance": 80,
        "consistent": True,
    }
    assert issued.json() == {"total_issued_points": 80}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_order_points_endpoint(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, _ = await seed_order(db_session, user, [(variant, 1, "25")])
    await seed_points(db_session, user.id, 25, order_id=order.id)

    with override_auth(commerce_app, make_admin_user()):
        response = await commerce_client.get(f"/admin/store/orders/{order.id}/points")

    assert response.json() == {
        "order_id": order.id,
        "earned_points": 25,
        "redeemed_points": 0,
        "net_points": 25,
    }
