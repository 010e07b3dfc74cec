import pytest

from tests.factories import OWNER_EMAIL, OWNER_USER_ID, create_merchant

URL = "/api/v1/merchant/billing-settings"


@pytest.fixture
def owner(db, auth):
    async def _owner():
        merchant = await create_merchant(db, balance_cents=0)
        auth.login(OWNER_USER_ID, OWNER_EMAIL)
        return merchant

    return _owner


async def test_defaults_fall_back_to_account_email(client, owner):
    await owner()

    response = await client.get(URL)

    data = response.json()["data"]
    assert data["billing_email"] == OWNER_EMAIL
    assert data["low_balance_threshold_cents"] == 100_000
    assert data["target_balance_cents"] == 300_000


async def test_update_billing_settings(client, owner):
    await owner()

    response = await client.patch(URL, json={
        "billing_email": " AP@Acme.Com ",
        "low_balance_threshold_cents": 20_000,
        "target_balance_cents": 50_000,
    })

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["billing_email"] == "ap@acme.com"
    assert data["low_balance_threshold_cents"] == 20_000
    assert data["target_balance_cents"] == 50_000


@pytest.mark.parametrize("payload, message", [
    ({}, "No fields to update"),
    ({"low_balance_threshold_cents": 9_999}, "Threshold must be at least $100"),
    ({"target_balance_cents": 5_000}, "Target balance must be at least $100"),
    ({"low_balance_threshold_cents": 200_000, "target_balance_cents": 150_000},
     "Target balance must be at least equal to the threshold"),
])
async def test_billing_settings_validation(client, owner, payload, message):
    await owner()

    response = await client.patch(URL, json=payload)

    assert response.status_code == 400
    assert response.json()["error"] == message


async def test_target_is_checked_against_stored_threshold(client, owner):
    await owner()

    response = await client.patch(URL, json={"target_balance_cents": 50_000})

    assert response.status_code == 400
    assert response.json()["error"] == "Target balance must be at least equal to the threshold"


async def test_billing_requires_login(client):
    response = await client.get(URL)

    assert response.status_code == 401


@pytest.mark.parametrize("billing_email", ["not-an-email", "a@b.", "x@y"])
async def test_billing_email_must_be_valid(client, owner, billing_email):
    await owner()

    response = await client.patch(URL, json={"billing_email": billing_email})

    assert response.status_code == 400
    assert response.json()["error"] == "Validation failed"
    assert "billing_email" in response.json()["details"]
