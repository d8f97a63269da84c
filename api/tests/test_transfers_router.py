"""Tests for the credit transfer endpoint."""

from __future__ import annotations

import pytest
import pytest_asyncio

EUR = 100_000


@pytest_asyncio.fixture()
async def accounts(client, service_headers):
    await client.post(
        "/api/v1/accounts",
        json={"account_id": "org-1", "kind": "organization", "welcome_credits": "10.00"},
        headers=service_headers,
    )
    await client.post(
        "/api/v1/accounts",
        json={"account_id": "member-1", "welcome_credits": "0"},
        headers=service_headers,
    )
    return client


async def _balance(client, headers, account_id: str) -> int:
    resp = await client.get(f"/api/v1/accounts/{account_id}", headers=headers)
    return resp.json()["balance"]


class TestTransfer:
    @pytest.mark.asyncio
    async def test_moves_credits_atomically(self, accounts, service_headers):
        resp = await accounts.post(
            "/api/v1/transfers",
            json={"from_account_id": "org-1", "to_account_id": "member-1", "amount": "3.00", "transfer_id": "t-1"},
            headers=service_headers,
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["transfer_id"] == "t-1"
        assert data["debit"]["type"] == "transfer_out"
        assert data["debit"]["amount"] == -3 * EUR
        assert data["credit"]["type"] == "transfer_in"
        assert data["credit"]["balance_after"] == 3 * EUR
        assert await _balance(accounts, service_headers, "org-1") == 7 * EUR
        assert await _balance(accounts, service_headers, "member-1") == 3 * EUR

    @pytest.mark.asyncio
    async def test_retry_with_same_transfer_id_applies_once(self, accounts, service_headers):
        body = {"from_account_id": "org-1", "to_account_id": "member-1", "amount": "3.00", "transfer_id": "t-1"}

        await accounts.post("/api/v1/transfers", json=body, headers=service_headers)
        retry = await accounts.post("/api/v1/transfers", json=body, headers=service_headers)

        assert retry.json()["duplicate"] is True
        assert await _balance(accounts, service_headers, "member-1") == 3 * EUR

    @pytest.mark.asyncio
    async def test_insufficient_source_changes_nothing(self, accounts, service_headers):
        resp = await accounts.post(
            "/api/v1/transfers",
            json={"from_account_id": "member-1", "to_account_id": "org-1", "amount": "1.00"},
            headers=service_headers,
        )

        assert resp.status_code == 402
        assert await _balance(accounts, service_headers, "org-1") == 10 * EUR

    @pytest.mark.asyncio
    async def test_unknown_destination_is_404(self, accounts, service_headers):
        resp = await accounts.post(
            "/api/v1/transfers",
            json={"from_account_id": "org-1", "to_account_id": "ghost", "amount": "1.00"},
            headers=service_headers,
        )

        assert resp.status_code == 404
        assert await _balance(accounts, service_headers, "org-1") == 10 * EUR

    @pytest.mark.asyncio
    async def test_same_account_rejected(self, accounts, service_headers):
        resp = await accounts.post(
            "/api/v1/transfers",
            json={"from_account_id": "org-1", "to_account_id": "org-1", "amount": "1.00"},
            headers=service_headers,
        )
        assert resp.status_code == 400
