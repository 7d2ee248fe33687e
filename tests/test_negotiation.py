"""Unit tests for the offer state machine."""

import threading
from decimal import Decimal

import pytest

from stoneridge.service.errors import IllegalStateError, ResourceNotFoundError, ValidationError
from stoneridge.service.negotiation import NO_LONGER_VALID, NegotiationEngine
from stoneridge.storage.models import OfferStatus, ProductStatus


def _status(store, offer_id):
    return store.get_offer(offer_id).status


class TestMakeOffer:
    def test_offer_is_pending_with_default_validity(self, engine, marketplace, store, clock):
        from datetime import timedelta

        chat, buyer = marketplace["chat"], marketplace["buyer"]
        view = engine.make_offer(chat.id, buyer.id, "80")

        assert view.status is OfferStatus.PENDING
        assert view.offered_price == Decimal("80.00")
        assert view.original_price == Decimal("100.00")
        assert view.expires_at == clock.now() + timedelta(hours=24)
        assert view.is_own_offer and not view.can_respond and not view.is_expired
        assert view.offered_by_name == "Bob"

        messages = store.list_chat_messages(chat.id)
        assert messages[-1].content == "💰 Bob made an offer of $80.00"
        assert messages[-1].message_type == "offer"

    def test_note_is_appended_to_chat_message(self, engine, marketplace, store):
        chat, buyer = marketplace["chat"], marketplace["buyer"]
        engine.make_offer(chat.id, buyer.id, Decimal("85"), note="final offer")
        assert store.list_chat_messages(chat.id)[-1].content == (
            "💰 Bob made an offer of $85.00 - final offer"
        )

    def test_new_offer_supersedes_own_pending_offer(self, engine, marketplace, store):
        chat, buyer, seller = marketplace["chat"], marketplace["buyer"], marketplace["seller"]
        first = engine.make_offer(chat.id, buyer.id, "80")
        counter = engine.make_offer(chat.id, seller.id, "95")
        second = engine.make_offer(chat.id, buyer.id, "85")

        assert _status(store, first.id) is OfferStatus.COUNTER_OFFERED
        assert _status(store, second.id) is OfferStatus.PENDING
        # The other party's offer is left alone
        assert _status(store, counter.id) is OfferStatus.PENDING

    @pytest.mark.parametrize(
        "price",
        ["0", "0.004", "-5", "1000000", "abc", float("nan"), None],
    )
    def test_price_bounds(self, engine, marketplace, price):
        with pytest.raises(ValidationError):
            engine.make_offer(marketplace["chat"].id, marketplace["buyer"].id, price)

    def test_price_limits_inclusive_and_rounded(self, engine, marketplace):
        chat, buyer = marketplace["chat"], marketplace["buyer"]
        assert engine.make_offer(chat.id, buyer.id, "0.01").offered_price == Decimal("0.01")
        assert engine.make_offer(chat.id, buyer.id, "999999.99").offered_price == Decimal(
            "999999.99"
        )
        assert engine.make_offer(chat.id, buyer.id, "80.125").offered_price == Decimal("80.13")

    def test_note_and_validity_checks(self, engine, marketplace):
        chat, buyer = marketplace["chat"], marketplace["buyer"]
        with pytest.raises(ValidationError):
            engine.make_offer(chat.id, buyer.id, "80", note="x" * 501)
        for hours in (0, -1, True):
            with pytest.raises(ValidationError):
                engine.make_offer(chat.id, buyer.id, "80", validity_hours=hours)
        engine.make_offer(chat.id, buyer.id, "80", note="x" * 500, validity_hours=1)

    def test_outsider_cannot_offer(self, engine, marketplace, make_account):
        outsider = make_account("mallory")
        with pytest.raises(IllegalStateError) as exc:
            engine.make_offer(marketplace["chat"].id, outsider.id, "80")
        assert exc.value.message == "You are not part of this chat"

    def test_missing_chat_or_requester(self, engine, marketplace):
        with pytest.raises(ResourceNotFoundError):
            engine.make_offer("missing", marketplace["buyer"].id, "80")
        with pytest.raises(ResourceNotFoundError):
            engine.make_offer(marketplace["chat"].id, "missing", "80")

    def test_non_negotiable_product(self, engine, store, marketplace):
        product = store.create_product(
            marketplace["seller"].id, "Fixed price lamp", Decimal("40"), negotiable=False
        )
        chat = store.create_chat(product.id, marketplace["buyer"].id)
        with pytest.raises(IllegalStateError):
            engine.make_offer(chat.id, marketplace["buyer"].id, "30")


class TestAcceptOffer:
    def test_negotiation_ends_in_sale(self, engine, marketplace, store):
        chat = marketplace["chat"]
        buyer, seller, product = marketplace["buyer"], marketplace["seller"], marketplace["product"]

        first = engine.make_offer(chat.id, buyer.id, "80", validity_hours=24)
        second = engine.make_offer(chat.id, buyer.id, "85")
        sellers_own = engine.make_offer(chat.id, seller.id, "95")

        accepted = engine.accept_offer(second.id, seller.id)

        assert accepted.status is OfferStatus.ACCEPTED
        assert accepted.responded_at is not None
        sold = store.get_product(product.id)
        assert sold.status is ProductStatus.SOLD
        assert sold.sold_price == Decimal("85.00")
        assert sold.buyer_id == buyer.id
        assert _status(store, first.id) is OfferStatus.COUNTER_OFFERED
        assert _status(store, sellers_own.id) is OfferStatus.REJECTED
        assert store.list_chat_messages(chat.id)[-1].content == (
            "✅ Offer of $85.00 accepted! Product sold to Bob"
        )

    def test_only_seller_can_accept(self, engine, marketplace):
        offer = engine.make_offer(marketplace["chat"].id, marketplace["buyer"].id, "80")
        with pytest.raises(IllegalStateError) as exc:
            engine.accept_offer(offer.id, marketplace["buyer"].id)
        assert exc.value.message == "Only the seller can accept offers"

    def test_unknown_offer(self, engine, marketplace):
        with pytest.raises(ResourceNotFoundError):
            engine.accept_offer("missing", marketplace["seller"].id)

    def test_expired_offer_cannot_be_accepted_before_sweep(
        self, engine, marketplace, store, clock
    ):
        offer = engine.make_offer(
            marketplace["chat"].id, marketplace["buyer"].id, "80", validity_hours=1
        )
        clock.advance(hours=1)
        with pytest.raises(IllegalStateError) as exc:
            engine.accept_offer(offer.id, marketplace["seller"].id)
        assert exc.value.message == NO_LONGER_VALID
        assert _status(store, offer.id) is OfferStatus.PENDING

    def test_accept_rejects_expired_pending_siblings(self, engine, marketplace, store, clock):
        chat, buyer, seller = marketplace["chat"], marketplace["buyer"], marketplace["seller"]
        stale = engine.make_offer(chat.id, seller.id, "99", validity_hours=1)
        clock.advance(hours=2)
        live = engine.make_offer(chat.id, buyer.id, "90")

        engine.accept_offer(live.id, seller.id)
        assert _status(store, stale.id) is OfferStatus.REJECTED

    def test_terminal_states_do_not_move(self, engine, marketplace, store):
        chat, buyer, seller = marketplace["chat"], marketplace["buyer"], marketplace["seller"]
        offer = engine.make_offer(chat.id, buyer.id, "80")
        engine.accept_offer(offer.id, seller.id)

        with pytest.raises(IllegalStateError):
            engine.accept_offer(offer.id, seller.id)
        with pytest.raises(IllegalStateError):
            engine.reject_offer(offer.id, seller.id)
        assert engine.sweep_expired() == 0
        assert _status(store, offer.id) is OfferStatus.ACCEPTED

    def test_sold_product_blocks_other_chats(self, engine, store, marketplace, make_account):
        seller, product = marketplace["seller"], marketplace["product"]
        rival = make_account("rita", first_name="Rita")
        rival_chat = store.create_chat(product.id, rival.id)
        rival_offer = engine.make_offer(rival_chat.id, rival.id, "90")
        offer = engine.make_offer(marketplace["chat"].id, marketplace["buyer"].id, "85")

        engine.accept_offer(offer.id, seller.id)

        with pytest.raises(IllegalStateError):
            engine.make_offer(rival_chat.id, rival.id, "120")
        # Selling twice fails and rolls back the status change
        with pytest.raises(IllegalStateError) as exc:
            engine.accept_offer(rival_offer.id, seller.id)
        assert exc.value.message == "This product has already been sold"
        assert _status(store, rival_offer.id) is OfferStatus.PENDING
        assert store.get_product(product.id).buyer_id == marketplace["buyer"].id

    def test_finalizer_failure_rolls_back(self, store, settings, clock, marketplace):
        class BrokenFinalizer:
            def mark_sold(self, product_id, buyer_id, price, seller_id):
                raise RuntimeError("ledger offline")

        engine = NegotiationEngine(store, settings, clock, finalizer=BrokenFinalizer())
        chat, buyer, seller = marketplace["chat"], marketplace["buyer"], marketplace["seller"]
        sibling = engine.make_offer(chat.id, seller.id, "95")
        offer = engine.make_offer(chat.id, buyer.id, "80")
        before = len(store.list_chat_messages(chat.id))

        with pytest.raises(RuntimeError):
            engine.accept_offer(offer.id, seller.id)
        assert _status(store, offer.id) is OfferStatus.PENDING
        assert _status(store, sibling.id) is OfferStatus.PENDING
        assert len(store.list_chat_messages(chat.id)) == before

    def test_racing_accepts_have_one_winner(self, engine, marketplace):
        offer = engine.make_offer(marketplace["chat"].id, marketplace["buyer"].id, "80")
        outcomes = []

        def _accept():
            try:
                engine.accept_offer(offer.id, marketplace["seller"].id)
                outcomes.append("ok")
            except IllegalStateError:
                outcomes.append("lost")

        threads = [threading.Thread(target=_accept) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("lost") == 7


class TestRejectOffer:
    def test_reject_with_reason(self, engine, marketplace, store):
        chat, buyer, seller = marketplace["chat"], marketplace["buyer"], marketplace["seller"]
        offer = engine.make_offer(chat.id, buyer.id, "80")
        rejected = engine.reject_offer(offer.id, seller.id, reason="too low")

        assert rejected.status is OfferStatus.REJECTED
        assert rejected.responded_at is not None
        assert store.get_product(marketplace["product"].id).status is ProductStatus.ACTIVE
        assert store.list_chat_messages(chat.id)[-1].content == (
            "❌ Offer of $80.00 was declined - too low"
        )

    def test_only_seller_can_reject(self, engine, marketplace):
        offer = engine.make_offer(marketplace["chat"].id, marketplace["buyer"].id, "80")
        with pytest.raises(IllegalStateError) as exc:
            engine.reject_offer(offer.id, marketplace["buyer"].id)
        assert exc.value.message == "Only the seller can reject offers"

    def test_rejected_offer_allows_new_offer(self, engine, marketplace, store):
        chat, buyer, seller = marketplace["chat"], marketplace["buyer"], marketplace["seller"]
        offer = engine.make_offer(chat.id, buyer.id, "80")
        engine.reject_offer(offer.id, seller.id)
        again = engine.make_offer(chat.id, buyer.id, "90")

        assert _status(store, offer.id) is OfferStatus.REJECTED
        assert again.status is OfferStatus.PENDING


class TestSweep:
    def test_sweep_is_strict_and_idempotent(self, engine, marketplace, store, clock):
        offer = engine.make_offer(marketplace["chat"].id, marketplace["buyer"].id, "80")

        clock.advance(hours=24)
        assert engine.sweep_expired() == 0
        clock.advance(seconds=1)
        assert engine.sweep_expired() == 1
        assert engine.sweep_expired() == 0
        assert _status(store, offer.id) is OfferStatus.REJECTED

    def test_sweep_leaves_live_offers(self, engine, marketplace, store, clock):
        chat, buyer, seller = marketplace["chat"], marketplace["buyer"], marketplace["seller"]
        short = engine.make_offer(chat.id, seller.id, "95", validity_hours=1)
        long = engine.make_offer(chat.id, buyer.id, "80", validity_hours=48)
        clock.advance(hours=2)

        assert engine.sweep_expired() == 1
        assert _status(store, short.id) is OfferStatus.REJECTED
        assert _status(store, long.id) is OfferStatus.PENDING


class TestListing:
    def test_chat_offers_newest_first_with_viewer_flags(self, engine, marketplace, clock):
        chat, buyer, seller = marketplace["chat"], marketplace["buyer"], marketplace["seller"]
        first = engine.make_offer(chat.id, buyer.id, "80")
        clock.advance(minutes=1)
        second = engine.make_offer(chat.id, buyer.id, "85")

        seller_view = engine.list_chat_offers(chat.id, seller.id)
        assert [v.id for v in seller_view] == [second.id, first.id]
        assert seller_view[0].can_respond and not seller_view[0].is_own_offer
        assert not seller_view[1].can_respond

        buyer_view = engine.list_chat_offers(chat.id, buyer.id)
        assert buyer_view[0].is_own_offer and not buyer_view[0].can_respond

    def test_chat_offers_outsider_and_missing(self, engine, marketplace, make_account):
        with pytest.raises(IllegalStateError):
            engine.list_chat_offers(marketplace["chat"].id, make_account("mallory").id)
        with pytest.raises(ResourceNotFoundError):
            engine.list_chat_offers("missing", marketplace["seller"].id)

    def test_pending_offers_for_seller(self, engine, store, marketplace, make_account, clock):
        seller, product = marketplace["seller"], marketplace["product"]
        rival = make_account("rita", first_name="Rita")
        rival_chat = store.create_chat(product.id, rival.id)
        engine.make_offer(marketplace["chat"].id, marketplace["buyer"].id, "80", validity_hours=1)
        live = engine.make_offer(rival_chat.id, rival.id, "90", validity_hours=48)
        clock.advance(hours=2)

        pending = engine.pending_offers_for_seller(seller.id)
        assert [v.id for v in pending] == [live.id]
        assert pending[0].can_respond
        assert pending[0].offered_by_name == "Rita"
        assert engine.pending_offers_for_seller(marketplace["buyer"].id) == []
