"""Integration tests for the storefront API (/store/*)."""

from decimal import Decimal

import pytest
from jose import jwt
from libs.common.config import get_settings
from services.commerce_service.models import OrderStatus, PaymentStatus
from tests.conftest import make_auth_user, override_auth
from tests.factories import seed_order, seed_points, seed_product, seed_user

# ---------------------------------------------------------------------------
# Health and auth
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_health(commerce_client):
    response = await commerce_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "commerce"}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_orders_require_a_bearer_token(commerce_client):
    response = await commerce_client.get("/store/orders")
    # 401 or 403 depending on the FastAPI release
    assert response.status_code in (401, 403)


@pytest.mark.asyncio
@pytest.mark.integration
async def test_invalid_token_is_rejected(commerce_client):
    response = await commerce_client.get(
        "/store/orders", headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
@pytest.mark.integration
async def test_signed_token_authenticates(commerce_client, db_session):
    """A real HS256 token with the user id in ``sub`` is accepted."""
    user = await seed_user(db_session)
    settings = get_settings()
    token = jwt.encode(
        {"sub": str(user.id), "role": "customer"},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )

    response = await commerce_client.get(
        "/store/orders", headers={"Authorization": f"Bearer {token}"}
    )

    assert response.status_code == 200
    assert response.json() == []


# ---------------------------------------------------------------------------
# POST /store/checkout
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_checkout_creates_order(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    product, variant = await seed_product(db_session, quantity=5)

    with override_auth(commerce_app, make_auth_user(user.id)):
        response = await commerce_client.post(
            "/store/checkout",
            json={
                "lines": [{"product_id": product.id, "quantity": 2}],
                "shipping_address": "1 Pool Lane",
            },
        )
        listing = await commerce_client.get("/store/orders")

    assert response.status_code == 201
    data = response.json()
    assert Decimal(data["subtotal"]) == Decimal("40.00")
    assert Decimal(data["shipping_amount"]) == Decimal("1.50")
    assert Decimal(data["total_amount"]) == Decimal("41.50")
    assert data["paid"] is False
    assert [o["id"] for o in listing.json()] == [data["order_id"]]
    assert listing.json()[0]["status"] == "processing"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_checkout_insufficient_stock_is_409(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    product, _ = await seed_product(db_session, quantity=1)

    with override_auth(commerce_app, make_auth_user(user.id)):
        response = await commerce_client.post(
            "/store/checkout",
            json={
                "lines": [{"product_id": product.id, "quantity": 3}],
                "delivery_method": "pickup",
            },
        )

    assert response.status_code == 409


@pytest.mark.asyncio
@pytest.mark.integration
async def test_checkout_unknown_coupon_is_400(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    product, _ = await seed_product(db_session)

    with override_auth(commerce_app, make_auth_user(user.id)):
        response = await commerce_client.post(
            "/store/checkout",
            json={
                "lines": [{"product_id": product.id, "quantity": 1}],
                "delivery_method": "pickup",
                "coupon_code": "GHOST",
            },
        )

    assert response.status_code == 400
    assert response.json()["detail"] == "Coupon code not found."


@pytest.mark.asyncio
@pytest.mark.integration
async def test_checkout_payload_validation(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)

    with override_auth(commerce_app, make_auth_user(user.id)):
        response = await commerce_client.post("/store/checkout", json={"lines": []})

    assert response.status_code == 422


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_order_detail_is_private(commerce_app, commerce_client, db_session):
    owner = await seed_user(db_session)
    other = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, _ = await seed_order(db_session, owner, [(variant, 2, "20")])

    with override_auth(commerce_app, make_auth_user(owner.id)):
        mine = await commerce_client.get(f"/store/orders/{order.id}")
    with override_auth(commerce_app, make_auth_user(other.id)):
        theirs = await commerce_client.get(f"/store/orders/{order.id}")

    assert mine.status_code == 200
    assert len(mine.json()["items"]) == 1
    assert mine.json()["items"][0]["quantity"] == 2
    assert theirs.status_code == 404


@pytest.mark.asyncio
@pytest.mark.integration
async def test_confirm_payment_endpoint(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, _ = await seed_order(
        db_session,
        user,
        [(variant, 1, "30")],
        payment_status=PaymentStatus.PENDING,
        status=OrderStatus.PROCESSING,
    )

    with override_auth(commerce_app, make_auth_user(user.id)):
        response = await commerce_client.post(
            f"/store/orders/{order.id}/payment",
            json={"payment_method": "paypal", "payment_reference": "CAP-77"},
        )

    assert response.status_code == 200
    assert response.json()["paid"] is True
    assert response.json()["points_awarded"] == 30


# ---------------------------------------------------------------------------
# Refunds and returns
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_refund_request_flow(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, items = await seed_order(db_session, user, [(variant, 2, "20")])

    with override_auth(commerce_app, make_auth_user(user.id)):
        eligibility = await commerce_client.get(
            f"/store/orders/{order.id}/refund-eligibility"
        )
        created = await commerce_client.post(
            f"/store/orders/{order.id}/refunds",
            json={"items": [{"order_item_id": items[0].id, "quantity": 1}], "reason": "Leaky"},
        )
        duplicate = await commerce_client.post(
            f"/store/orders/{order.id}/refunds",
            json={"items": [{"order_item_id": items[0].id, "quantity": 1}]},
        )
        mine = await commerce_client.get("/store/refunds")

    assert eligibility.json()["allowed"] is True
    assert Decimal(eligibility.json()["remaining"]) == Decimal("40.00")

    assert created.status_code == 201
    body = created.json()
    assert body["status"] == "pending"
    assert Decimal(body["requested_amount"]) == Decimal("20.00")
    assert body["items"][0]["quantity"] == 1

    assert duplicate.status_code == 400
    assert [r["id"] for r in mine.json()] == [body["id"]]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_return_request_round_trip(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, _ = await seed_order(db_session, user, [(variant, 1, "20")])

    with override_auth(commerce_app, make_auth_user(user.id)):
        missing = await commerce_client.get(f"/store/orders/{order.id}/returns")
        created = await commerce_client.post(
            f"/store/orders/{order.id}/returns",
            json={"request_type": "exchange", "reason": "Too small"},
        )
        fetched = await commerce_client.get(f"/store/orders/{order.id}/returns")

    assert missing.status_code == 404
    assert created.status_code == 201
    assert fetched.json()["request_type"] == "exchange"
    assert fetched.json()["status"] == "pending"


# ---------------------------------------------------------------------------
# Loyalty
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_loyalty_balance_quote_and_voucher(commerce_app, commerce_client, db_session):
    user = await seed_user(db_session)
    await seed_points(db_session, user.id, 300)

    with override_auth(commerce_app, make_auth_user(user.id)):
        summary = await commerce_client.get("/store/loyalty")
        quote = await commerce_client.post(
            "/store/loyalty/quote", json={"points": 200, "order_amount": "20"}
        )
        voucher = await commerce_client.post(
            "/store/loyalty/vouchers", json={"points": 100, "voucher_code": "POOL-1"}
        )
        replay = await commerce_client.post(
            "/store/loyalty/vouchers", json={"points": 100, "voucher_code": "POOL-1"}
        )
        overdraw = await commerce_client.post(
            "/store/loyalty/vouchers", json={"points": 1000, "voucher_code": "POOL-2"}
        )

    assert summary.json()["balance"] == 300
    assert len(summary.json()["transactions"]) == 1
    assert quote.json()["valid"] is True
    assert Decimal(quote.json()["discount_amount"]) == Decimal("10.00")
    assert voucher.json()["balance"] == 200
    assert replay.json()["already_processed"] is True
    assert overdraw.status_code == 400
