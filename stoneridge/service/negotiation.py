from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, List, Optional, Protocol, Union

from stoneridge.config import Settings
from stoneridge.logging import get_logger
from stoneridge.service.clock import Clock
from stoneridge.service.errors import IllegalStateError, ResourceNotFoundError, ValidationError
from stoneridge.storage.models import Chat, Offer, OfferStatus, Product, ProductStatus

logger = get_logger(__name__)

MIN_OFFER_PRICE = Decimal("0.01")
MAX_OFFER_PRICE = Decimal("999999.99")
MAX_NOTE_LENGTH = 500
OFFER_MESSAGE_TYPE = "offer"

NO_LONGER_VALID = "This offer is no longer valid"


@dataclass(frozen=True)
class OfferView:
    """An offer as seen by one caller, with flags computed for that caller."""

    id: str
    chat_id: str
    offered_by_id: str
    offered_by_name: str
    offered_price: Decimal
    original_price: Decimal
    message: Optional[str]
    status: OfferStatus
    expires_at: datetime
    responded_at: Optional[datetime]
    created_at: datetime
    is_expired: bool
    can_respond: bool
    is_own_offer: bool


class ProductFinalizer(Protocol):
    def mark_sold(
        self, product_id: str, buyer_id: str, price: Decimal, seller_id: str
    ) -> Product: ...


class StoreProductFinalizer:
    """Marks a product sold inside whatever transaction the caller holds."""

    def __init__(self, store, clock: Clock) -> None:
        self.store = store
        self.clock = clock

    def mark_sold(self, product_id: str, buyer_id: str, price: Decimal, seller_id: str) -> Product:
        product = self.store.get_product(product_id, for_update=True)
        if not product:
            raise ResourceNotFoundError("Product not found")
        if product.seller_id != seller_id:
            raise IllegalStateError("Only the seller can mark the product as sold")
        if product.is_sold:
            raise IllegalStateError("This product has already been sold")
        product.status = ProductStatus.SOLD
        product.buyer_id = buyer_id
        product.sold_price = price
        product.sold_at = self.clock.now()
        saved = self.store.save_product(product)
        logger.info("product_sold", product_id=product_id, buyer_id=buyer_id, price=str(price))
        return saved


def _parse_price(price: Union[Decimal, int, float, str]) -> Decimal:
    try:
        value = Decimal(str(price))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Offered price must be a number", detail={"field": "offered_price"})
    if not value.is_finite():
        raise ValidationError("Offered price must be a number", detail={"field": "offered_price"})
    value = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if value < MIN_OFFER_PRICE:
        raise ValidationError(
            "Offered price must be greater than 0", detail={"field": "offered_price"}
        )
    if value > MAX_OFFER_PRICE:
        raise ValidationError(
            "Offered price must be less than 1,000,000", detail={"field": "offered_price"}
        )
    return value


class NegotiationEngine:
    """Per-chat offer state machine.

    PENDING is the only live state; ACCEPTED, REJECTED and COUNTER_OFFERED
    are final. Every status change goes through the store's compare-and-set
    so two responders racing on one offer cannot both win. Mutations lock
    the chat row before the offer row, always in that order.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        clock: Clock,
        finalizer: Optional[ProductFinalizer] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.finalizer = finalizer or StoreProductFinalizer(store, clock)

    def _display_name(self, account_id: str, cache: Dict[str, str]) -> str:
        if account_id not in cache:
            account = self.store.get_account(account_id)
            cache[account_id] = account.effective_display_name if account else "Unknown"
        return cache[account_id]

    def _view(
        self,
        offer: Offer,
        chat: Chat,
        product: Optional[Product],
        viewer_id: str,
        now: datetime,
        names: Dict[str, str],
    ) -> OfferView:
        is_own = offer.offered_by == viewer_id
        return OfferView(
            id=offer.id,
            chat_id=offer.chat_id,
            offered_by_id=offer.offered_by,
            offered_by_name=self._display_name(offer.offered_by, names),
            offered_price=offer.offered_price,
            original_price=product.price if product else Decimal("0"),
            message=offer.message,
            status=offer.status,
            expires_at=offer.expires_at,
            responded_at=offer.responded_at,
            created_at=offer.created_at,
            is_expired=offer.is_expired(now),
            can_respond=offer.is_pending(now) and chat.seller_id == viewer_id and not is_own,
            is_own_offer=is_own,
        )

    def _send_offer_message(self, chat: Chat, sender_id: str, content: str, now: datetime) -> None:
        self.store.append_chat_message(
            chat.id, sender_id, content, message_type=OFFER_MESSAGE_TYPE, created_at=now
        )

    def make_offer(
        self,
        chat_id: str,
        requester_id: str,
        offered_price: Union[Decimal, int, float, str],
        note: Optional[str] = None,
        validity_hours: Optional[int] = None,
    ) -> OfferView:
        price = _parse_price(offered_price)
        if note is not None and len(note) > MAX_NOTE_LENGTH:
            raise ValidationError(
                f"Message must not exceed {MAX_NOTE_LENGTH} characters", detail={"field": "message"}
            )
        hours = self.settings.default_offer_validity_hours if validity_hours is None else validity_hours
        if isinstance(hours, bool) or not isinstance(hours, int) or hours <= 0:
            raise ValidationError(
                "Validity hours must be a positive integer", detail={"field": "validity_hours"}
            )
        requester = self.store.get_account(requester_id)
        if not requester:
            raise ResourceNotFoundError("User not found")

        with self.store.transaction():
            chat = self.store.get_chat(chat_id, for_update=True)
            if not chat:
                raise ResourceNotFoundError("Chat not found")
            if not chat.has_participant(requester_id):
                raise IllegalStateError("You are not part of this chat")
            product = self.store.get_product(chat.product_id)
            if not product:
                raise ResourceNotFoundError("Product not found")
            if product.is_sold:
                raise IllegalStateError("This product has already been sold")
            if not product.negotiable:
                raise IllegalStateError("This product is not open for negotiation")

            now = self.clock.now()
            superseded = [
                o.id
                for o in self.store.list_active_pending_offers(chat.id, now)
                if o.offered_by == requester_id
                and self.store.transition_offer(o.id, OfferStatus.COUNTER_OFFERED)
            ]
            offer = self.store.create_offer(
                chat.id,
                requester_id,
                price,
                now + timedelta(hours=hours),
                message=note,
                created_at=now,
            )
            suffix = f" - {note}" if note else ""
            self._send_offer_message(
                chat,
                requester_id,
                f"💰 {requester.effective_display_name} made an offer of ${price:.2f}{suffix}",
                now,
            )

        logger.info(
            "offer_made",
            offer_id=offer.id,
            chat_id=chat.id,
            offered_by=requester_id,
            price=str(price),
            superseded=superseded,
        )
        names = {requester_id: requester.effective_display_name}
        return self._view(offer, chat, product, requester_id, now, names)

    def _load_for_response(self, offer_id: str, responder_id: str, verb: str):
        # Chat row first, then offer row
        unlocked = self.store.get_offer(offer_id)
        if not unlocked:
            raise ResourceNotFoundError("Offer not found")
        chat = self.store.get_chat(unlocked.chat_id, for_update=True)
        if not chat:
            raise ResourceNotFoundError("Chat not found")
        offer = self.store.get_offer(offer_id, for_update=True)
        if not offer:
            raise ResourceNotFoundError("Offer not found")
        if chat.seller_id != responder_id:
            raise IllegalStateError(f"Only the seller can {verb} offers")
        return chat, offer

    def accept_offer(self, offer_id: str, responder_id: str) -> OfferView:
        """Accept, sell the product and reject every sibling still PENDING.

        The three steps share one store transaction; any failure leaves the
        offer, the product and the siblings as they were.
        """
        with self.store.transaction():
            chat, offer = self._load_for_response(offer_id, responder_id, "accept")
            now = self.clock.now()
            if not offer.is_pending(now):
                raise IllegalStateError(NO_LONGER_VALID)
            if not self.store.transition_offer(offer.id, OfferStatus.ACCEPTED, responded_at=now):
                raise IllegalStateError(NO_LONGER_VALID)
            product = self.finalizer.mark_sold(
                chat.product_id, offer.offered_by, offer.offered_price, responder_id
            )
            rejected = [
                other.id
                for other in self.store.list_offers_for_chat(chat.id)
                if other.id != offer.id
                and other.status is OfferStatus.PENDING
                and self.store.transition_offer(other.id, OfferStatus.REJECTED)
            ]
            names: Dict[str, str] = {}
            buyer_name = self._display_name(offer.offered_by, names)
            self._send_offer_message(
                chat,
                responder_id,
                f"✅ Offer of ${offer.offered_price:.2f} accepted! Product sold to {buyer_name}",
                now,
            )
            accepted = self.store.get_offer(offer.id)

        logger.info(
            "offer_accepted",
            offer_id=offer.id,
            chat_id=chat.id,
            product_id=chat.product_id,
            price=str(offer.offered_price),
            rejected_siblings=rejected,
        )
        return self._view(accepted, chat, product, responder_id, now, names)

    def reject_offer(self, offer_id: str, responder_id: str, reason: Optional[str] = None) -> OfferView:
        with self.store.transaction():
            chat, offer = self._load_for_response(offer_id, responder_id, "reject")
            now = self.clock.now()
            if not offer.is_pending(now):
                raise IllegalStateError(NO_LONGER_VALID)
            if not self.store.transition_offer(offer.id, OfferStatus.REJECTED, responded_at=now):
                raise IllegalStateError(NO_LONGER_VALID)
            suffix = f" - {reason}" if reason else ""
            self._send_offer_message(
                chat,
                responder_id,
                f"❌ Offer of ${offer.offered_price:.2f} was declined{suffix}",
                now,
            )
            rejected = self.store.get_offer(offer.id)
            product = self.store.get_product(chat.product_id)

        logger.info("offer_rejected", offer_id=offer.id, chat_id=chat.id)
        return self._view(rejected, chat, product, responder_id, now, {})

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Materialise PENDING offers past ``expires_at`` as REJECTED.

        Only rows still PENDING are touched, so repeated or interrupted runs
        converge on the same state.
        """
        now = now or self.clock.now()
        with self.store.transaction():
            expired = self.store.reject_expired_offers(now)
        if expired:
            logger.info("offers_expired", count=len(expired))
        return len(expired)

    def list_chat_offers(self, chat_id: str, viewer_id: str) -> List[OfferView]:
        chat = self.store.get_chat(chat_id)
        if not chat:
            raise ResourceNotFoundError("Chat not found")
        if not chat.has_participant(viewer_id):
            raise IllegalStateError("You are not part of this chat")
        product = self.store.get_product(chat.product_id)
        now = self.clock.now()
        names: Dict[str, str] = {}
        return [
            self._view(offer, chat, product, viewer_id, now, names)
            for offer in self.store.list_offers_for_chat(chat_id)
        ]

    def pending_offers_for_seller(self, seller_id: str) -> List[OfferView]:
        now = self.clock.now()
        names: Dict[str, str] = {}
        chats: Dict[str, Chat] = {}
        products: Dict[str, Optional[Product]] = {}
        views = []
        for offer in self.store.list_pending_offers_for_seller(seller_id, now):
            if offer.chat_id not in chats:
                chat = self.store.get_chat(offer.chat_id)
                if not chat:
                    continue
                chats[offer.chat_id] = chat
                products[chat.id] = self.store.get_product(chat.product_id)
            chat = chats[offer.chat_id]
            views.append(self._view(offer, chat, products[chat.id], seller_id, now, names))
        return views
