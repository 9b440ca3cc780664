"""Integration tests for the HTTP API.

Runs the real FastAPI app over httpx's ASGI transport with services wired
to an in-memory database and fake adapters. Verifies status codes,
response shapes and the ErrorResponse contract.
"""

import io

import pytest
from PIL import Image

from app.models.contracts import PaymentSession, ProviderUpdate
from conftest import (
    VALID_SIGNATURE,
    WEBHOOK_TOKEN,
    auth_headers,
    completed_generation,
    create_user,
    make_token,
    new_id,
    stripe_event,
)


def _photo(w: int = 600, h: int = 600) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (w, h), "beige").save(buf, format="PNG")
    return buf.getvalue()


async def _upload(client, user_id: str = "user-1") -> str:
    resp = await client.post(
        "/api/v1/uploads",
        files={"file": ("room.png", _photo(), "image/png")},
        headers=auth_headers(user_id),
    )
    assert resp.status_code == 201
    return resp.json()["image_ref"]


async def _submit(client, image_ref: str, user_id: str = "user-1", **overrides):
    body = {"style_slug": "japandi", "room_type": "salon", "image_ref": image_ref, **overrides}
    return await client.post("/api/v1/generations", json=body, headers=auth_headers(user_id))


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_expired_token(self, client):
        """Expired tokens are rejected."""
        token = make_token("user-1", expires_in=-60)
        resp = await client.get("/api/v1/credits", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert "expired" in resp.json()["message"]

    @pytest.mark.asyncio
    async def test_garbage_token(self, client):
        """Tokens that fail verification are rejected."""
        resp = await client.get("/api/v1/credits", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_first_request_opens_account(self, client):
        """A new user starts with the signup bonus."""
        resp = await client.get("/api/v1/credits", headers=auth_headers("newcomer"))
        assert resp.status_code == 200
        assert resp.json() == {"balance": 3}


class TestUploads:
    @pytest.mark.asyncio
    async def test_upload_stores_jpeg_under_user_prefix(self, client, storage):
        """A valid photo is stored as JPEG under the caller's prefix."""
        resp = await client.post(
            "/api/v1/uploads",
            files={"file": ("room.png", _photo(800, 600), "image/png")},
            headers=auth_headers("user-1"),
        )

        assert resp.status_code == 201
        body = resp.json()
        assert body["image_ref"].startswith("users/user-1/uploads/")
        assert (body["width"], body["height"]) == (800, 600)
        stored = storage.objects[body["image_ref"]]
        assert Image.open(io.BytesIO(stored)).format == "JPEG"

    @pytest.mark.asyncio
    async def test_small_photo_rejected(self, client, storage):
        """Photos below the minimum resolution are a 400."""
        resp = await client.post(
            "/api/v1/uploads",
            files={"file": ("room.png", _photo(300, 300), "image/png")},
            headers=auth_headers(),
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_error"
        assert storage.objects == {}

    @pytest.mark.asyncio
    async def test_non_image_rejected(self, client):
        """Non-image bodies are a 400."""
        resp = await client.post(
            "/api/v1/uploads",
            files={"file": ("room.png", b"hello", "image/png")},
            headers=auth_headers(),
        )
        assert resp.status_code == 400


class TestSubmitGeneration:
    @pytest.mark.asyncio
    async def test_submit_charges_and_queues(self, client, inference):
        """Submitting debits one credit and returns the processing generation."""
        image_ref = await _upload(client)

        resp = await _submit(client, image_ref, transform_mode="keep_layout")

        assert resp.status_code == 201
        body = resp.json()
        assert body["credits_remaining"] == 2
        assert body["generation"]["status"] == "processing"
        assert body["generation"]["transform_mode"] == "keep_layout"
        assert body["generation"]["provider_job_id"] == "job-1"
        assert inference.submitted[0]["image_url"].startswith("https://signed.example.com/")

    @pytest.mark.asyncio
    async def test_insufficient_credits(self, client, services):
        """No credits left is a 402 and nothing is submitted."""
        await create_user(services, "user-1", balance=0)
        image_ref = await _upload(client)

        resp = await _submit(client, image_ref)

        assert resp.status_code == 402
        assert resp.json()["error"] == "insufficient_credits"

    @pytest.mark.asyncio
    async def test_unknown_style(self, client):
        """Unknown catalog entries are a 400."""
        image_ref = await _upload(client)
        resp = await _submit(client, image_ref, style_slug="gothique")
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_foreign_image_ref(self, client):
        """Another user's upload cannot be used."""
        image_ref = await _upload(client, "user-2")
        resp = await _submit(client, image_ref, user_id="user-1")
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_schema_error_is_422(self, client):
        """Request bodies failing validation use the ErrorResponse shape."""
        resp = await client.post(
            "/api/v1/generations",
            json={"style_slug": "japandi", "room_type": "salon", "transform_mode": "paint"},
            headers=auth_headers(),
        )
        assert resp.status_code == 422
        body = resp.json()
        assert body["error"] == "validation_error"
        assert "image_ref" in body["message"]

    @pytest.mark.asyncio
    async def test_provider_failure_refunds(self, client, inference):
        """A rejected submission is a 502 and the credit comes back."""
        from app.errors import ProviderSubmissionError

        inference.submit_error = ProviderSubmissionError("down")
        image_ref = await _upload(client)

        resp = await _submit(client, image_ref)

        assert resp.status_code == 502
        assert resp.json()["retryable"] is True
        balance = await client.get("/api/v1/credits", headers=auth_headers())
        assert balance.json()["balance"] == 3


class TestGenerationReads:
    @pytest.mark.asyncio
    async def test_status_polls_provider(self, client, inference, storage):
        """A running generation is reconciled against the provider on read."""
        image_ref = await _upload(client)
        generation_id = (await _submit(client, image_ref)).json()["generation"]["id"]
        inference.statuses["job-1"] = ProviderUpdate(
            job_id="job-1", status="succeeded", output_url="https://fal.media/out.jpg"
        )

        resp = await client.get(f"/api/v1/generations/{generation_id}", headers=auth_headers())

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "completed"
        assert body["output_image_ref"] == f"users/user-1/generations/{generation_id}.jpg"
        assert storage.copies == [("https://fal.media/out.jpg", body["output_image_ref"])]

    @pytest.mark.asyncio
    async def test_status_for_other_user_is_404(self, client):
        """Generations are invisible to other users."""
        image_ref = await _upload(client)
        generation_id = (await _submit(client, image_ref)).json()["generation"]["id"]

        resp = await client.get(
            f"/api/v1/generations/{generation_id}", headers=auth_headers("intruder")
        )

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_malformed_id_is_404(self, client):
        """Ids that are not UUIDs are simply not found."""
        resp = await client.get("/api/v1/generations/not-a-uuid", headers=auth_headers())
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_list_newest_first(self, client):
        """Listing returns the caller's generations, newest first."""
        image_ref = await _upload(client)
        first = (await _submit(client, image_ref)).json()["generation"]["id"]
        second = (await _submit(client, image_ref)).json()["generation"]["id"]

        resp = await client.get("/api/v1/generations?limit=10", headers=auth_headers())

        assert resp.status_code == 200
        ids = [g["id"] for g in resp.json()["generations"]]
        assert set(ids) == {first, second}
        assert len(ids) == 2


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_refunds(self, client, inference):
        """Cancelling fails the generation and refunds its credit."""
        image_ref = await _upload(client)
        generation_id = (await _submit(client, image_ref)).json()["generation"]["id"]

        resp = await client.post(
            f"/api/v1/generations/{generation_id}/cancel", headers=auth_headers()
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "failed"
        assert inference.cancelled == ["job-1"]
        balance = await client.get("/api/v1/credits", headers=auth_headers())
        assert balance.json()["balance"] == 3

    @pytest.mark.asyncio
    async def test_cancel_other_users_generation(self, client):
        """Only the owner may cancel."""
        image_ref = await _upload(client)
        generation_id = (await _submit(client, image_ref)).json()["generation"]["id"]

        resp = await client.post(
            f"/api/v1/generations/{generation_id}/cancel", headers=auth_headers("intruder")
        )

        assert resp.status_code == 403


class TestHDUnlock:
    @pytest.mark.asyncio
    async def test_unlock_with_credit_then_download(self, client, services, sessions):
        """Spending a credit unlocks the HD download."""
        await create_user(services, "user-1", balance=3)
        generation = await completed_generation(services, sessions, "user-1")

        locked = await client.get(
            f"/api/v1/generations/{generation.id}/download", headers=auth_headers()
        )
        assert locked.status_code == 403

        resp = await client.post(
            f"/api/v1/generations/{generation.id}/hd-unlock",
            json={"method": "credit"},
            headers=auth_headers(),
        )
        assert resp.status_code == 200
        assert resp.json()["credits_remaining"] == 2

        download = await client.get(
            f"/api/v1/generations/{generation.id}/download", headers=auth_headers()
        )
        assert download.status_code == 200
        assert download.json()["url"].startswith("https://signed.example.com/users/user-1/")

    @pytest.mark.asyncio
    async def test_unlock_with_credit_insufficient(self, client, services, sessions):
        """Unlocking without credits is a 402."""
        await create_user(services, "user-1", balance=0)
        generation = await completed_generation(services, sessions, "user-1")

        resp = await client.post(
            f"/api/v1/generations/{generation.id}/hd-unlock",
            json={"method": "credit"},
            headers=auth_headers(),
        )

        assert resp.status_code == 402

    @pytest.mark.asyncio
    async def test_checkout_then_payment_unlock(self, client, services, sessions, payments):
        """The HD checkout flow unlocks once the session is paid."""
        await create_user(services, "user-1")
        generation = await completed_generation(services, sessions, "user-1")

        checkout = await client.post(
            f"/api/v1/generations/{generation.id}/hd-checkout", headers=auth_headers()
        )
        assert checkout.status_code == 200
        session_id = checkout.json()["session_id"]
        assert payments.checkouts[0]["price_id"] == "price_hd"
        assert payments.checkouts[0]["metadata"]["generationId"] == str(generation.id)

        unpaid = await client.post(
            f"/api/v1/generations/{generation.id}/hd-unlock",
            json={"method": "payment", "session_id": session_id},
            headers=auth_headers(),
        )
        assert unpaid.status_code == 401

        payments.sessions[session_id] = PaymentSession(
            session_id=session_id,
            payment_status="paid",
            metadata=payments.checkouts[0]["metadata"],
        )
        paid = await client.post(
            f"/api/v1/generations/{generation.id}/hd-unlock",
            json={"method": "payment", "session_id": session_id},
            headers=auth_headers(),
        )
        assert paid.status_code == 200
        assert paid.json()["method"] == "payment"

    @pytest.mark.asyncio
    async def test_payment_unlock_requires_session(self, client, services, sessions):
        """method=payment without a session id is a 400."""
        await create_user(services, "user-1")
        generation = await completed_generation(services, sessions, "user-1")

        resp = await client.post(
            f"/api/v1/generations/{generation.id}/hd-unlock",
            json={"method": "payment"},
            headers=auth_headers(),
        )

        assert resp.status_code == 400


class TestCredits:
    @pytest.mark.asyncio
    async def test_history(self, client, services):
        """History lists the signup bonus and later movements, newest first."""
        await create_user(services, "user-1", balance=5)

        resp = await client.get("/api/v1/credits/history", headers=auth_headers())

        assert resp.status_code == 200
        types = [t["type"] for t in resp.json()["transactions"]]
        assert types == ["purchase", "bonus"]

    @pytest.mark.asyncio
    async def test_packs_are_public(self, client):
        """The pack list needs no authentication."""
        resp = await client.get("/api/v1/credits/packs")
        assert resp.status_code == 200
        packs = resp.json()
        assert [p["id"] for p in packs] == ["pack_10", "pack_25", "pack_50", "pack_100"]
        assert [p["id"] for p in packs if p["popular"]] == ["pack_25"]

    @pytest.mark.asyncio
    async def test_checkout(self, client, payments):
        """Buying a pack opens a checkout carrying the credit amount."""
        resp = await client.post(
            "/api/v1/credits/checkout", json={"pack_id": "pack_25"}, headers=auth_headers()
        )

        assert resp.status_code == 200
        assert resp.json()["session_id"] == "cs_test_1"
        checkout = payments.checkouts[0]
        assert checkout["price_id"] == "price_pack_25"
        assert checkout["metadata"]["credits"] == "25"
        assert checkout["metadata"]["userId"] == "user-1"

    @pytest.mark.asyncio
    async def test_checkout_unknown_pack(self, client):
        """Unknown packs are a 400."""
        resp = await client.post(
            "/api/v1/credits/checkout", json={"pack_id": "pack_7"}, headers=auth_headers()
        )
        assert resp.status_code == 400


class TestStripeWebhook:
    @pytest.mark.asyncio
    async def test_bad_signature(self, client):
        """Unsigned events are 401 so Stripe does not treat them as delivered."""
        resp = await client.post(
            "/api/v1/webhooks/stripe",
            content=stripe_event("evt_1", "cs_1", {}),
            headers={"stripe-signature": "forged"},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_credit_purchase_applied_once(self, client, services):
        """A paid credit purchase credits once, even when redelivered."""
        await create_user(services, "user-1")
        payload = stripe_event(
            "evt_1",
            "cs_1",
            {"type": "credits_purchase", "userId": "user-1", "credits": "25", "packId": "pack_25"},
        )

        first = await client.post(
            "/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": VALID_SIGNATURE}
        )
        again = await client.post(
            "/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": VALID_SIGNATURE}
        )

        assert first.status_code == 200
        assert first.json()["action"] == "credits_added"
        assert again.json()["action"] == "duplicate_event"
        balance = await client.get("/api/v1/credits", headers=auth_headers())
        assert balance.json()["balance"] == 28


class TestProviderWebhook:
    @pytest.mark.asyncio
    async def test_bad_token(self, client):
        """Webhooks without the shared token are 401."""
        resp = await client.post(
            "/api/v1/webhooks/provider?token=wrong",
            json={"request_id": "job-1", "status": "OK"},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_job(self, client):
        """Webhooks for unknown jobs are 404 so the provider retries."""
        resp = await client.post(
            f"/api/v1/webhooks/provider?token={WEBHOOK_TOKEN}",
            json={"request_id": new_id(), "status": "ERROR", "error": "boom"},
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_non_json_body(self, client):
        """Bodies that are not JSON objects are a 400."""
        resp = await client.post(
            f"/api/v1/webhooks/provider?token={WEBHOOK_TOKEN}", content=b"[1, 2]"
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_completion_webhook(self, client, storage):
        """A success webhook completes the generation and stores the output."""
        image_ref = await _upload(client)
        generation_id = (await _submit(client, image_ref)).json()["generation"]["id"]

        resp = await client.post(
            f"/api/v1/webhooks/provider?token={WEBHOOK_TOKEN}",
            json={
                "request_id": "job-1",
                "status": "OK",
                "payload": {"images": [{"url": "https://fal.media/out.jpg"}]},
            },
        )

        assert resp.status_code == 200
        assert resp.json() == {
            "received": True,
            "generation_id": generation_id,
            "status": "completed",
        }
        status = await client.get(f"/api/v1/generations/{generation_id}", headers=auth_headers())
        assert status.json()["output_image_ref"] in storage.objects

    @pytest.mark.asyncio
    async def test_failure_webhook_refunds(self, client):
        """An error webhook fails the generation and refunds the credit."""
        image_ref = await _upload(client)
        generation_id = (await _submit(client, image_ref)).json()["generation"]["id"]

        resp = await client.post(
            f"/api/v1/webhooks/provider?token={WEBHOOK_TOKEN}",
            json={"request_id": "job-1", "status": "ERROR", "error": "NSFW"},
        )

        assert resp.json()["status"] == "failed"
        status = await client.get(f"/api/v1/generations/{generation_id}", headers=auth_headers())
        assert status.json()["error"] == "NSFW"
        balance = await client.get("/api/v1/credits", headers=auth_headers())
        assert balance.json()["balance"] == 3
