"""
Chapterly Backend — API Route Tests
=====================================

What:  End-to-end HTTP tests through the FastAPI app (ASGITransport), with
       the database on in-memory SQLite and provider gateways mocked.
Why:   Clients depend on exact status codes and camelCase body shapes.

What we test:
    ✅ /health and X-Request-ID propagation
    ✅ Books, chapters and unlock responses
    ✅ Payments: packages, balance, checkout, confirmation, webhook
    ✅ Auth: magic link, /me, guest, deletion
    ✅ Error body shape {"error", "code", "request_id"} per status
"""

import pytest

from chapterly.exceptions import ProviderError, UnauthorizedError, ValidationError


# ══════════════════════════════════════════════════════════════════════════
# Health & middleware
# ══════════════════════════════════════════════════════════════════════════

class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, test_client):
        response = await test_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["message"] == "Backend is running"
        assert body["database"] in ("connected", "disconnected")
        assert response.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_client_request_id_is_echoed(self, test_client):
        response = await test_client.get("/health", headers={"X-Request-ID": "app-42.retry_1"})

        assert response.headers["X-Request-ID"] == "app-42.retry_1"

    @pytest.mark.asyncio
    async def test_unsafe_request_id_is_replaced(self, test_client):
        response = await test_client.get("/health", headers={"X-Request-ID": "bad id with spaces!"})

        assert response.headers["X-Request-ID"] != "bad id with spaces!"
        assert len(response.headers["X-Request-ID"]) == 12

    @pytest.mark.asyncio
    async def test_well_known_files_are_served(self, test_client):
        response = await test_client.get("/.well-known/assetlinks.json")

        assert response.status_code == 200
        assert response.json()[0]["relation"] == ["delegate_permission/common.handle_all_urls"]


# ══════════════════════════════════════════════════════════════════════════
# Books & chapters
# ══════════════════════════════════════════════════════════════════════════

class TestBookRoutes:

    @pytest.mark.asyncio
    async def test_list_books(self, test_client, make_book):
        await make_book("older", title="Older", age_days=3)
        await make_book("newer", title="Newer")

        response = await test_client.get("/api/books")

        assert response.status_code == 200
        books = response.json()
        assert [b["book_id"] for b in books] == ["newer", "older"]
        assert {"title", "author", "views", "date_uploaded", "cover_url"} <= set(books[0])

    @pytest.mark.asyncio
    async def test_unknown_book_is_404_with_error_body(self, test_client):
        response = await test_client.get("/api/books/missing")

        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "Book not found"
        assert body["code"] == "not_found"
        assert body["request_id"] == response.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_record_view(self, test_client, make_book):
        await make_book("book-a", views=9)

        response = await test_client.post("/api/books/book-a/view")

        assert response.status_code == 200
        assert response.json() == {"success": True, "views": 10}


class TestChapterRoutes:

    @pytest.mark.asyncio
    async def test_list_and_get_chapters(self, test_client, make_book, make_chapter):
        await make_book("book-a")
        await make_chapter("book-a", 2)
        await make_chapter("book-a", 1, content="First words")

        listing = await test_client.get("/api/chapters/book/book-a")
        single = await test_client.get("/api/chapters/book/book-a/chapter/1")

        assert [c["chapter_number"] for c in listing.json()] == [1, 2]
        assert single.json()["content"] == "First words"

    @pytest.mark.asyncio
    async def test_missing_chapter_is_404(self, test_client, make_book):
        await make_book("book-a")

        response = await test_client.get("/api/chapters/book/book-a/chapter/3")

        assert response.status_code == 404
        assert response.json()["error"] == "Chapter not found"

    @pytest.mark.asyncio
    async def test_free_chapter_unlock(self, test_client):
        response = await test_client.post(
            "/api/chapters/unlock", json={"userId": "u1", "bookId": "book-a", "chapterNum": 5}
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "credits": None,
            "paidChapters": None,
            "message": "Chapter is free",
        }

    @pytest.mark.asyncio
    async def test_paid_chapter_unlock(self, test_client, make_account):
        await make_account("u1", credits=1250, registered=True)

        response = await test_client.post(
            "/api/chapters/unlock", json={"userId": "u1", "bookId": "book-a", "chapterNum": 6}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["credits"] == 1200
        assert body["paidChapters"] == ["book-a:6"]

    @pytest.mark.asyncio
    async def test_insufficient_credits_is_400_with_amounts(self, test_client, make_account):
        await make_account("u1", credits=49)

        response = await test_client.post(
            "/api/chapters/unlock", json={"userId": "u1", "bookId": "book-a", "chapterNum": 6}
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Insufficient credits"
        assert body["code"] == "insufficient_credits"
        assert (body["required"], body["current"]) == (50, 49)

    @pytest.mark.asyncio
    async def test_missing_fields_is_400(self, test_client):
        response = await test_client.post("/api/chapters/unlock", json={"userId": "u1"})

        assert response.status_code == 400
        assert response.json()["error"] == "User ID, book ID, and chapter number are required"

    @pytest.mark.asyncio
    async def test_malformed_chapter_number_is_400(self, test_client):
        response = await test_client.post(
            "/api/chapters/unlock", json={"userId": "u1", "bookId": "book-a", "chapterNum": "six"}
        )

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"


# ══════════════════════════════════════════════════════════════════════════
# Payments
# ══════════════════════════════════════════════════════════════════════════

class TestPaymentRoutes:

    @pytest.mark.asyncio
    async def test_packages_are_camel_case(self, test_client):
        response = await test_client.get("/api/payments/packages")

        assert response.status_code == 200
        starter = response.json()[0]
        assert starter["id"] == "200"
        assert starter["baseCredits"] == 200
        assert starter["bonusPercent"] == 200
        assert starter["totalCredits"] == 600
        assert starter["productId"] == "credits_200"
        assert starter["oneTime"] is True

    @pytest.mark.asyncio
    async def test_packages_hide_owned_one_time_product(self, test_client, make_account):
        await make_account("u1", settings={"purchasedProducts": ["credits_200"]})

        response = await test_client.get("/api/payments/packages", params={"userId": "u1"})

        assert "200" not in [p["id"] for p in response.json()]

    @pytest.mark.asyncio
    async def test_balance(self, test_client, make_account):
        await make_account("u1", credits=640, settings={"purchasedProducts": ["credits_200"]})

        response = await test_client.get("/api/payments/balance", params={"userId": "u1"})

        assert response.json() == {"userId": "u1", "credits": 640, "purchasedProducts": ["credits_200"]}

    @pytest.mark.asyncio
    async def test_balance_without_user_is_400(self, test_client):
        response = await test_client.get("/api/payments/balance")

        assert response.status_code == 400
        assert response.json()["error"] == "userId is required"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/api/payments/create-checkout-session", "/api/payments/stripe/checkout"])
    async def test_checkout_session(self, test_client, path):
        response = await test_client.post(path, json={"packageId": "500", "userId": "u1"})

        assert response.status_code == 200
        assert response.json() == {
            "checkoutUrl": "https://checkout.stripe.com/c/pay/cs_test_new",
            "sessionId": "cs_test_new",
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/api/payments/create-payment-intent", "/api/payments/stripe/payment-sheet"])
    async def test_payment_sheet(self, test_client, path):
        response = await test_client.post(path, json={"packageId": "1000", "userId": "u1"})

        assert response.status_code == 200
        assert response.json() == {"clientSecret": "pi_test_new_secret_abc", "paymentIntentId": "pi_test_new"}

    @pytest.mark.asyncio
    async def test_stripe_not_configured_is_500(self, test_client, mock_stripe):
        mock_stripe.create_checkout_session.side_effect = ProviderError(
            message="Stripe is not configured on the server.", provider="stripe"
        )

        response = await test_client.post(
            "/api/payments/create-checkout-session", json={"packageId": "500", "userId": "u1"}
        )

        assert response.status_code == 500
        assert response.json()["error"] == "Stripe is not configured on the server."
        assert response.json()["code"] == "provider_error"

    @pytest.mark.asyncio
    async def test_confirm_checkout_credits(self, test_client, mock_stripe, stripe_txn):
        mock_stripe.fetch_checkout_session.return_value = stripe_txn()

        response = await test_client.post(
            "/api/payments/stripe/confirm", json={"sessionId": "cs_test_1", "userId": "user-1"}
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "creditsAdded": 500,
            "newTotal": 500,
            "purchasedProducts": [],
            "message": None,
        }

    @pytest.mark.asyncio
    async def test_confirm_someone_elses_session_is_400(self, test_client, mock_stripe, stripe_txn):
        mock_stripe.fetch_checkout_session.return_value = stripe_txn(account_id="user-1")

        response = await test_client.post(
            "/api/payments/stripe/confirm", json={"sessionId": "cs_test_1", "userId": "user-2"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Session does not belong to this user"
        assert response.json()["code"] == "ownership_mismatch"

    @pytest.mark.asyncio
    async def test_confirm_payment_sheet(self, test_client, mock_stripe, stripe_txn):
        mock_stripe.fetch_payment_intent.return_value = stripe_txn(reference="pi_1")

        response = await test_client.post(
            "/api/payments/stripe/payment-sheet/confirm",
            json={"paymentIntentId": "pi_1", "userId": "user-1"},
        )

        assert response.status_code == 200
        assert response.json()["newTotal"] == 500

    @pytest.mark.asyncio
    async def test_verify_google_play_purchase(self, test_client, mock_google_play, play_txn):
        mock_google_play.fetch_transaction.return_value = play_txn(product_id="credits_200")

        response = await test_client.post(
            "/api/payments/verify-purchase",
            json={"userId": "u1", "productId": "credits_200", "purchaseToken": "play-token-1"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["creditsAdded"] == 600
        assert body["purchasedProducts"] == ["credits_200"]

    @pytest.mark.asyncio
    async def test_pending_google_play_purchase_is_400(self, test_client, mock_google_play, play_txn):
        mock_google_play.fetch_transaction.return_value = play_txn(state="pending")

        response = await test_client.post(
            "/api/payments/verify-purchase",
            json={"userId": "u1", "productId": "credits_500", "purchaseToken": "play-token-1"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "purchase_not_completed"

    @pytest.mark.asyncio
    async def test_redeemed_token_for_another_user_is_400(self, test_client, mock_google_play, play_txn):
        mock_google_play.fetch_transaction.return_value = play_txn()
        await test_client.post(
            "/api/payments/verify-purchase",
            json={"userId": "u1", "productId": "credits_500", "purchaseToken": "play-token-1"},
        )
        mock_google_play.fetch_transaction.return_value = play_txn(consumed=True)

        response = await test_client.post(
            "/api/payments/verify-purchase",
            json={"userId": "u2", "productId": "credits_500", "purchaseToken": "play-token-1"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "already_redeemed"
        balance = await test_client.get("/api/payments/balance", params={"userId": "u2"})
        assert balance.json()["credits"] == 0


    @pytest.mark.asyncio
    async def test_webhook_receives_event(self, test_client, mock_stripe, stripe_txn):
        mock_stripe.construct_event.return_value = {
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_test_1"}},
        }
        mock_stripe.session_to_transaction.return_value = stripe_txn()

        response = await test_client.post(
            "/api/payments/stripe/webhook",
            content=b'{"id": "evt_1"}',
            headers={"Stripe-Signature": "t=1,v1=abc"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        payload, signature = mock_stripe.construct_event.call_args.args
        assert payload == b'{"id": "evt_1"}'
        assert signature == "t=1,v1=abc"

    @pytest.mark.asyncio
    async def test_webhook_bad_signature_is_400(self, test_client, mock_stripe):
        mock_stripe.construct_event.side_effect = ValidationError(message="Invalid webhook signature")

        response = await test_client.post(
            "/api/payments/stripe/webhook",
            content=b"{}",
            headers={"Stripe-Signature": "t=1,v1=forged"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid webhook signature"


# ══════════════════════════════════════════════════════════════════════════
# Auth
# ══════════════════════════════════════════════════════════════════════════

class TestAuthRoutes:

    @pytest.mark.asyncio
    async def test_magic_link(self, test_client, mock_identity):
        response = await test_client.post("/api/auth/magiclink", json={"email": "reader@example.com"})

        assert response.status_code == 200
        assert response.json() == {"message": "Magic link sent to email"}
        mock_identity.send_otp.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_magic_link_without_email_is_400(self, test_client):
        response = await test_client.post("/api/auth/magiclink", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "Email is required"

    @pytest.mark.asyncio
    async def test_verify_returns_session(self, test_client, mock_identity):
        mock_identity.verify_otp.return_value = {
            "access_token": "jwt-access",
            "refresh_token": "refresh",
            "token_type": "bearer",
            "user": {"id": "auth-user-1", "email": "reader@example.com"},
        }

        response = await test_client.post(
            "/api/auth/verify", json={"email": "reader@example.com", "token": "123456"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Authentication successful"
        assert body["user"]["id"] == "auth-user-1"
        assert body["session"]["access_token"] == "jwt-access"

    @pytest.mark.asyncio
    async def test_me_without_token_is_401(self, test_client):
        response = await test_client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_me_with_expired_token_is_401(self, test_client, mock_identity):
        mock_identity.get_user.side_effect = UnauthorizedError(message="Invalid token")

        response = await test_client.get("/api/auth/me", headers={"Authorization": "Bearer old"})

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid token"

    @pytest.mark.asyncio
    async def test_me(self, test_client, mock_identity, make_account):
        await make_account("auth-user-1", credits=1250, registered=True, email="reader@example.com")
        mock_identity.get_user.return_value = {"id": "auth-user-1", "email": "reader@example.com"}

        response = await test_client.get("/api/auth/me", headers={"Authorization": "Bearer jwt-access"})

        assert response.status_code == 200
        body = response.json()
        assert body["user"]["id"] == "auth-user-1"
        assert body["profile"]["number_of_credits"] == 1250

    @pytest.mark.asyncio
    async def test_guest_without_body(self, test_client):
        response = await test_client.post("/api/auth/guest")

        assert response.status_code == 200
        body = response.json()
        assert body["credits"] == 0
        assert body["guestId"]

    @pytest.mark.asyncio
    async def test_guest_resume(self, test_client, make_account):
        await make_account("guest-7", credits=40)

        response = await test_client.post("/api/auth/guest", json={"guestId": "guest-7"})

        assert response.json() == {"guestId": "guest-7", "credits": 40}

    @pytest.mark.asyncio
    async def test_delete_account(self, test_client, mock_identity, make_account):
        await make_account("auth-user-1", registered=True)
        mock_identity.get_user.return_value = {"id": "auth-user-1"}

        response = await test_client.delete("/api/auth/delete", headers={"Authorization": "Bearer jwt-access"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Account deleted"}
        mock_identity.delete_user.assert_awaited_once_with("auth-user-1")

    @pytest.mark.asyncio
    async def test_delete_otp_for_unknown_email_is_400(self, test_client):
        response = await test_client.post("/api/auth/delete-otp", json={"email": "nobody@example.com"})

        assert response.status_code == 400
        assert response.json()["error"] == "No account found for this email"

    @pytest.mark.asyncio
    async def test_delete_confirm(self, test_client, mock_identity, make_account):
        await make_account("auth-user-1", registered=True, email="reader@example.com")
        mock_identity.verify_otp.return_value = {"user": {"id": "auth-user-1"}}

        response = await test_client.post(
            "/api/auth/delete-confirm", json={"email": "reader@example.com", "token": "123456"}
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
