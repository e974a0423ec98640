import asyncio

import pytest
from pydantic import ValidationError

from payshare.ledger import (
    DanglingReference,
    DuplicateKey,
    InsufficientBalance,
    InvalidStateTransition,
    MemoryLedgerStore,
)
from payshare.schemas import (
    FILE_REQUIRED_FIELDS,
    CommentCreate,
    DownloadCreate,
    FileUpdate,
    PaymentCreate,
    PaymentStatus,
    UserCreate,
)

from tests.helpers import EARNINGS, make_file, make_user


async def download(ledger, file_id, user_id=None, earnings=None):
    return await ledger.record_download(
        DownloadCreate(file_id=file_id, user_id=user_id, ip_address="10.0.0.1", user_agent="pytest", earnings=earnings)
    )


async def comment(ledger, file_id, user_id, rating):
    return await ledger.create_comment(
        CommentCreate(file_id=file_id, user_id=user_id, comment=f"rated {rating}", rating=rating)
    )


class TestUsers:
    async def test_create_user_starts_with_zero_balance(self, ledger):
        user = await make_user(ledger)

        assert user.id > 0
        assert user.balance == 0
        assert user.created_at is not None
        assert await ledger.get_user(user.id) == user
        assert (await ledger.get_user_by_external_id("uid-alice")).id == user.id
        assert (await ledger.get_user_by_email("alice@example.com")).id == user.id

    async def test_missing_user_lookups_return_none(self, ledger):
        assert await ledger.get_user(999) is None
        assert await ledger.get_user_by_external_id("nobody") is None
        assert await ledger.get_user_by_email("nobody@example.com") is None

    async def test_ids_are_issued_in_order(self, ledger):
        first = await make_user(ledger, "alice")
        second = await make_user(ledger, "bob")
        assert second.id > first.id

    @pytest.mark.parametrize("field", ["external_id", "username", "email"])
    async def test_duplicate_unique_field_is_rejected(self, ledger, field):
        await make_user(ledger, "alice")
        values = {"external_id": "uid-other", "username": "other", "email": "other@example.com"}
        values[field] = {"external_id": "uid-alice", "username": "alice", "email": "alice@example.com"}[field]

        with pytest.raises(DuplicateKey):
            await ledger.create_user(UserCreate(**values))

    async def test_adjust_user_balance(self, ledger):
        user = await make_user(ledger)

        assert (await ledger.adjust_user_balance(user.id, 1000)).balance == 1000
        updated = await ledger.adjust_user_balance(user.id, -250)

        assert updated.balance == 750
        assert updated.updated_at >= user.updated_at
        assert (await ledger.get_user(user.id)).balance == 750

    async def test_adjust_balance_of_missing_user(self, ledger):
        assert await ledger.adjust_user_balance(42, 100) is None

    async def test_get_users_skips_unknown_ids(self, ledger):
        alice = await make_user(ledger, "alice")
        bob = await make_user(ledger, "bob")

        users = await ledger.get_users([bob.id, alice.id, 999, alice.id])

        assert sorted(u.id for u in users) == [alice.id, bob.id]
        assert await ledger.get_users([]) == []


class TestFiles:
    async def test_create_file_initializes_counters(self, ledger):
        owner = await make_user(ledger)
        file = await make_file(ledger, owner.id)

        assert file.user_id == owner.id
        assert (file.downloads, file.rating, file.total_ratings) == (0, 0.0, 0)
        assert len(file.share_token) == 10
        assert file.tags == ["course", "pdf"]
        assert (await ledger.get_file_by_share_token(file.share_token)).id == file.id
        assert await ledger.get_file_by_share_token("missing-token") is None

    async def test_update_file_merges_fields(self, ledger):
        owner = await make_user(ledger)
        file = await make_file(ledger, owner.id)

        updated = await ledger.update_file(file.id, FileUpdate(title="Final notes", tags=["final"]))

        assert updated.title == "Final notes"
        assert updated.tags == ["final"]
        assert updated.description == "Week 1"
        assert updated.share_token == file.share_token
        assert updated.updated_at >= file.updated_at

    async def test_update_missing_file(self, ledger):
        assert await ledger.update_file(123, FileUpdate(title="x")) is None

    @pytest.mark.parametrize("field", FILE_REQUIRED_FIELDS)
    def test_update_cannot_null_required_fields(self, field):
        with pytest.raises(ValidationError):
            FileUpdate(**{field: None})

    async def test_update_can_clear_optional_description(self, ledger):
        owner = await make_user(ledger)
        file = await make_file(ledger, owner.id)

        updated = await ledger.update_file(file.id, FileUpdate(description=None))

        assert updated.description is None
        assert updated.title == file.title
        assert updated.tags == file.tags
        assert [f.title for f in await ledger.list_popular_files()] == [file.title]

    async def test_file_for_missing_owner_is_rejected(self, ledger):
        with pytest.raises(DanglingReference):
            await make_file(ledger, 404)

        assert await ledger.list_recent_files() == []

    async def test_list_files_by_owner_newest_first(self, ledger):
        alice = await make_user(ledger, "alice")
        bob = await make_user(ledger, "bob")
        first = await make_file(ledger, alice.id, "first")
        second = await make_file(ledger, alice.id, "second")
        await make_file(ledger, bob.id, "other")

        files = await ledger.list_files_by_owner(alice.id)

        assert [f.id for f in files] == [second.id, first.id]

    async def test_delete_file_cascades(self, ledger):
        owner = await make_user(ledger)
        reader = await make_user(ledger, "bob")
        file = await make_file(ledger, owner.id)
        kept = await make_file(ledger, owner.id, "kept")
        d = await download(ledger, file.id)
        c = await comment(ledger, file.id, reader.id, 5)
        kept_download = await download(ledger, kept.id)

        assert await ledger.delete_file(file.id) is True

        assert await ledger.get_file(file.id) is None
        assert await ledger.get_file_by_share_token(file.share_token) is None
        assert await ledger.get_download(d.id) is None
        assert await ledger.get_comment(c.id) is None
        assert await ledger.list_file_downloads(file.id) == []
        assert await ledger.list_file_comments(file.id) == []
        assert (await ledger.get_download(kept_download.id)).file_id == kept.id
        assert await ledger.delete_file(file.id) is False

    async def test_listings_are_sorted_and_limited(self, ledger):
        owner = await make_user(ledger)
        reader = await make_user(ledger, "bob")
        files = [await make_file(ledger, owner.id, f"file {i}") for i in range(12)]

        for _ in range(3):
            await download(ledger, files[4].id)
        await download(ledger, files[7].id)
        await comment(ledger, files[2].id, reader.id, 5)
        await comment(ledger, files[9].id, reader.id, 3)

        popular = await ledger.list_popular_files()
        recent = await ledger.list_recent_files(limit=3)
        top_rated = await ledger.list_top_rated_files(limit=2)

        assert len(popular) == 10
        assert [f.id for f in popular[:2]] == [files[4].id, files[7].id]
        # ties on downloads fall back to newest id first
        assert popular[2].id == files[11].id
        assert [f.id for f in recent] == [files[11].id, files[10].id, files[9].id]
        assert [f.id for f in top_rated] == [files[2].id, files[9].id]

    async def test_listings_are_deterministic(self, ledger):
        owner = await make_user(ledger)
        for i in range(5):
            await make_file(ledger, owner.id, f"file {i}")

        first = [f.id for f in await ledger.list_popular_files()]
        second = [f.id for f in await ledger.list_popular_files()]

        assert first == second


class TestDownloads:
    async def test_three_anonymous_downloads_credit_owner(self, ledger):
        owner = await make_user(ledger)
        file = await make_file(ledger, owner.id)

        for _ in range(3):
            await download(ledger, file.id, earnings=450)

        assert (await ledger.get_file(file.id)).downloads == 3
        assert (await ledger.get_user(owner.id)).balance == 1350

    async def test_default_earnings_come_from_store_configuration(self, ledger):
        owner = await make_user(ledger)
        file = await make_file(ledger, owner.id)

        record = await download(ledger, file.id)

        assert record.earnings == EARNINGS
        assert record.user_id is None
        assert record.ip_address == "10.0.0.1"
        assert (await ledger.get_user(owner.id)).balance == EARNINGS

    async def test_concurrent_downloads_do_not_lose_updates(self, ledger):
        owner = await make_user(ledger)
        file = await make_file(ledger, owner.id)
        n = 10

        await asyncio.gather(*(download(ledger, file.id) for _ in range(n)))

        assert (await ledger.get_file(file.id)).downloads == n
        assert (await ledger.get_user(owner.id)).balance == n * EARNINGS
        assert len(await ledger.list_file_downloads(file.id)) == n

    async def test_download_of_missing_file_is_rejected(self, ledger):
        with pytest.raises(DanglingReference):
            await download(ledger, 404)

        assert await ledger.list_file_downloads(404) == []

    async def test_list_user_downloads_returns_owner_earnings_feed(self, ledger):
        alice = await make_user(ledger, "alice")
        bob = await make_user(ledger, "bob")
        alice_file = await make_file(ledger, alice.id)
        bob_file = await make_file(ledger, bob.id)
        first = await download(ledger, alice_file.id, user_id=bob.id)
        await download(ledger, bob_file.id, user_id=alice.id)
        second = await download(ledger, alice_file.id)

        feed = await ledger.list_user_downloads(alice.id)

        assert [d.id for d in feed] == [second.id, first.id]
        assert [d.id for d in await ledger.list_file_downloads(alice_file.id)] == [second.id, first.id]

    async def test_download_by_unknown_user_is_rejected(self, ledger):
        owner = await make_user(ledger)
        file = await make_file(ledger, owner.id)

        with pytest.raises(DanglingReference):
            await download(ledger, file.id, user_id=999)

        assert (await ledger.get_file(file.id)).downloads == 0
        assert (await ledger.get_user(owner.id)).balance == 0
        assert await ledger.list_file_downloads(file.id) == []

    async def test_anonymous_downloads_can_be_excluded_from_earnings(self):
        ledger = MemoryLedgerStore(download_earnings=EARNINGS, credit_anonymous_downloads=False)
        owner = await make_user(ledger)
        reader = await make_user(ledger, "bob")
        file = await make_file(ledger, owner.id)

        anonymous = await download(ledger, file.id)
        known = await download(ledger, file.id, user_id=reader.id)

        assert anonymous.earnings == 0
        assert known.earnings == EARNINGS
        assert (await ledger.get_file(file.id)).downloads == 2
        assert (await ledger.get_user(owner.id)).balance == EARNINGS


class TestComments:
    async def test_running_average_rating(self, ledger):
        owner = await make_user(ledger)
        reader = await make_user(ledger, "bob")
        file = await make_file(ledger, owner.id)

        await comment(ledger, file.id, reader.id, 4)
        after_first = await ledger.get_file(file.id)
        await comment(ledger, file.id, reader.id, 2)
        after_second = await ledger.get_file(file.id)

        assert (after_first.rating, after_first.total_ratings) == (4.0, 1)
        assert (after_second.rating, after_second.total_ratings) == (3.0, 2)

    async def test_concurrent_ratings_average_to_the_mean(self, ledger):
        owner = await make_user(ledger)
        reader = await make_user(ledger, "bob")
        file = await make_file(ledger, owner.id)
        ratings = [5, 3, 4, 1, 2, 5, 5, 4]

        await asyncio.gather(*(comment(ledger, file.id, reader.id, r) for r in ratings))

        updated = await ledger.get_file(file.id)
        assert updated.total_ratings == len(ratings)
        assert updated.rating == pytest.approx(sum(ratings) / len(ratings))
        assert len(await ledger.list_file_comments(file.id)) == len(ratings)

    async def test_comments_listed_newest_first(self, ledger):
        owner = await make_user(ledger)
        file = await make_file(ledger, owner.id)
        first = await comment(ledger, file.id, owner.id, 3)
        second = await comment(ledger, file.id, owner.id, 4)

        assert [c.id for c in await ledger.list_file_comments(file.id)] == [second.id, first.id]
        assert (await ledger.get_comment(first.id)).comment == "rated 3"

    async def test_comment_on_missing_file_is_rejected(self, ledger):
        user = await make_user(ledger)
        with pytest.raises(DanglingReference):
            await comment(ledger, 77, user.id, 3)

    async def test_comment_by_unknown_user_is_rejected(self, ledger):
        owner = await make_user(ledger)
        file = await make_file(ledger, owner.id)

        with pytest.raises(DanglingReference):
            await comment(ledger, file.id, 999, 5)

        updated = await ledger.get_file(file.id)
        assert (updated.rating, updated.total_ratings) == (0.0, 0)

    @pytest.mark.parametrize("rating", [0, 6])
    def test_rating_must_be_between_one_and_five(self, rating):
        with pytest.raises(ValidationError):
            CommentCreate(file_id=1, user_id=1, comment="meh", rating=rating)


class TestPayments:
    async def funded_user(self, ledger, balance=10000):
        user = await make_user(ledger)
        await ledger.adjust_user_balance(user.id, balance)
        return user

    async def test_payment_is_created_pending(self, ledger):
        user = await self.funded_user(ledger)

        payment = await ledger.create_payment(
            PaymentCreate(user_id=user.id, amount=5000, payment_method="mobile_money", status="completed")
        )

        assert payment.status == PaymentStatus.PENDING
        assert payment.completed_at is None
        assert payment.transaction_id is None
        assert (await ledger.get_user(user.id)).balance == 10000

    async def test_payment_for_missing_user_is_rejected(self, ledger):
        with pytest.raises(DanglingReference):
            await ledger.create_payment(PaymentCreate(user_id=9, amount=100, payment_method="bank"))

    async def test_completing_payment_debits_balance_once(self, ledger):
        user = await self.funded_user(ledger)
        payment = await ledger.create_payment(PaymentCreate(user_id=user.id, amount=5000, payment_method="bank"))

        completed = await ledger.update_payment_status(payment.id, PaymentStatus.COMPLETED, "tx-1")
        repeated = await ledger.update_payment_status(payment.id, "completed", "tx-2")

        assert completed.status == PaymentStatus.COMPLETED
        assert completed.completed_at is not None
        assert completed.transaction_id == "tx-1"
        assert repeated.transaction_id == "tx-1"
        assert (await ledger.get_user(user.id)).balance == 5000

    async def test_concurrent_completion_debits_once(self, ledger):
        user = await self.funded_user(ledger)
        payment = await ledger.create_payment(PaymentCreate(user_id=user.id, amount=3000, payment_method="bank"))

        await asyncio.gather(*(ledger.update_payment_status(payment.id, "completed") for _ in range(5)))

        assert (await ledger.get_user(user.id)).balance == 7000

    async def test_failed_payment_keeps_balance(self, ledger):
        user = await self.funded_user(ledger)
        payment = await ledger.create_payment(PaymentCreate(user_id=user.id, amount=5000, payment_method="bank"))

        failed = await ledger.update_payment_status(payment.id, PaymentStatus.FAILED)

        assert failed.status == PaymentStatus.FAILED
        assert failed.completed_at is None
        assert (await ledger.get_user(user.id)).balance == 10000

    @pytest.mark.parametrize(
        "first, second",
        [
            (PaymentStatus.COMPLETED, PaymentStatus.FAILED),
            (PaymentStatus.FAILED, PaymentStatus.COMPLETED),
        ],
    )
    async def test_terminal_states_are_final(self, ledger, first, second):
        user = await self.funded_user(ledger)
        payment = await ledger.create_payment(PaymentCreate(user_id=user.id, amount=1000, payment_method="bank"))
        await ledger.update_payment_status(payment.id, first)
        balance = (await ledger.get_user(user.id)).balance

        with pytest.raises(InvalidStateTransition):
            await ledger.update_payment_status(payment.id, second)

        assert (await ledger.get_payment(payment.id)).status == first
        assert (await ledger.get_user(user.id)).balance == balance

    @pytest.mark.parametrize("status", ["pending", "refunded"])
    async def test_invalid_target_status(self, ledger, status):
        user = await self.funded_user(ledger)
        payment = await ledger.create_payment(PaymentCreate(user_id=user.id, amount=1000, payment_method="bank"))

        with pytest.raises(InvalidStateTransition):
            await ledger.update_payment_status(payment.id, status)

    async def test_update_missing_payment(self, ledger):
        assert await ledger.update_payment_status(1, PaymentStatus.COMPLETED) is None
        assert await ledger.get_payment(1) is None

    async def test_list_user_payments_newest_first(self, ledger):
        user = await self.funded_user(ledger)
        other = await make_user(ledger, "bob")
        first = await ledger.create_payment(PaymentCreate(user_id=user.id, amount=1000, payment_method="bank"))
        second = await ledger.create_payment(PaymentCreate(user_id=user.id, amount=2000, payment_method="bank"))
        await ledger.create_payment(PaymentCreate(user_id=other.id, amount=500, payment_method="bank"))

        payments = await ledger.list_user_payments(user.id)

        assert [p.id for p in payments] == [second.id, first.id]

    async def test_payout_must_fit_available_balance(self, ledger):
        user = await self.funded_user(ledger, balance=1350)

        first = await ledger.request_payout(PaymentCreate(user_id=user.id, amount=1000, payment_method="bank"))
        # the first payout is still pending, so only 350 is available
        with pytest.raises(InsufficientBalance):
            await ledger.request_payout(PaymentCreate(user_id=user.id, amount=1000, payment_method="bank"))

        assert first.status == PaymentStatus.PENDING
        assert [p.id for p in await ledger.list_user_payments(user.id)] == [first.id]
        assert (await ledger.get_user(user.id)).balance == 1350

    async def test_payout_after_completion_uses_remaining_balance(self, ledger):
        user = await self.funded_user(ledger, balance=1350)
        first = await ledger.request_payout(PaymentCreate(user_id=user.id, amount=1000, payment_method="bank"))
        await ledger.update_payment_status(first.id, PaymentStatus.COMPLETED)

        second = await ledger.request_payout(PaymentCreate(user_id=user.id, amount=350, payment_method="bank"))

        assert second.amount == 350
        with pytest.raises(InsufficientBalance):
            await ledger.request_payout(PaymentCreate(user_id=user.id, amount=1, payment_method="bank"))

    async def test_failed_payout_frees_its_amount(self, ledger):
        user = await self.funded_user(ledger, balance=1000)
        first = await ledger.request_payout(PaymentCreate(user_id=user.id, amount=1000, payment_method="bank"))
        await ledger.update_payment_status(first.id, PaymentStatus.FAILED)

        retry = await ledger.request_payout(PaymentCreate(user_id=user.id, amount=1000, payment_method="bank"))

        assert retry.status == PaymentStatus.PENDING

    async def test_concurrent_payouts_cannot_overdraw(self, ledger):
        user = await self.funded_user(ledger, balance=1350)

        results = await asyncio.gather(
            *(
                ledger.request_payout(PaymentCreate(user_id=user.id, amount=1000, payment_method="bank"))
                for _ in range(4)
            ),
            return_exceptions=True,
        )

        created = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, InsufficientBalance)]
        assert len(created) == 1
        assert len(refused) == 3
        assert len(await ledger.list_user_payments(user.id)) == 1

    async def test_payout_for_missing_user_is_rejected(self, ledger):
        with pytest.raises(DanglingReference):
            await ledger.request_payout(PaymentCreate(user_id=9, amount=100, payment_method="bank"))


async def test_memory_store_releases_row_locks():
    ledger = MemoryLedgerStore(download_earnings=EARNINGS)
    owner = await make_user(ledger)
    file = await make_file(ledger, owner.id)

    await asyncio.gather(*(download(ledger, file.id) for _ in range(5)))
    await comment(ledger, file.id, owner.id, 4)
    payment = await ledger.request_payout(PaymentCreate(user_id=owner.id, amount=450, payment_method="bank"))
    await ledger.update_payment_status(payment.id, PaymentStatus.COMPLETED)
    await ledger.delete_file(file.id)

    assert len(ledger._lock) == 0
