from __future__ import annotations

import logging
from dataclasses import replace

from .domain import ParsedReceipt, Purchase, PurchaseEvent, Receipt, purchases_equal
from .errors import EmptyReceiptError
from .events import get_purchase_event_type
from .repository import Database

logger = logging.getLogger("iapsync.reconcile")


class ReceiptReconciler:
    """Persists a parsed receipt and derives the lifecycle event it caused.

    Purchases are written oldest-first so original and linked orders are stored before the
    purchases referencing them. A stored purchase is only replaced by a draft that comes from a
    strictly newer receipt, which keeps replays and out-of-order deliveries from clobbering
    newer state.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def process(
        self,
        parsed: ParsedReceipt,
        user_id: str | None = None,
        sync_user_id: bool = False,
    ) -> PurchaseEvent:
        if not parsed.purchases:
            raise EmptyReceiptError("Receipt contains no transactions")

        latest = parsed.purchases[0]
        previous = None
        if latest.is_subscription and latest.original_order_id:
            previous = self.db.get_latest_purchase_by_original_order_id(
                latest.original_order_id, latest.platform
            )

        purchase = self.save(parsed, user_id, sync_user_id)
        event_type = get_purchase_event_type(previous, purchase)
        logger.info(
            "Reconciled receipt %s: order %s -> %s",
            parsed.receipt.hash[:12],
            purchase.order_id,
            event_type.value,
        )
        return PurchaseEvent(type=event_type, data=purchase)

    def save(
        self,
        parsed: ParsedReceipt,
        user_id: str | None = None,
        sync_user_id: bool = False,
    ) -> Purchase:
        if not parsed.purchases:
            raise EmptyReceiptError("Receipt contains no transactions")

        user_id = self.resolve_user_id(parsed, user_id, sync_user_id)
        receipt = self.upsert_receipt(parsed.receipt, user_id)

        saved = [
            self.save_purchase(draft, receipt, user_id) for draft in reversed(parsed.purchases)
        ]
        return saved[-1]

    def resolve_user_id(
        self, parsed: ParsedReceipt, user_id: str | None, sync_user_id: bool
    ) -> str | None:
        latest = parsed.purchases[0]
        order_ids = [purchase.order_id for purchase in parsed.purchases]
        if latest.is_subscription and latest.original_order_id:
            order_ids.append(latest.original_order_id)

        existing_user_id = self.db.get_user_id(order_ids, latest.platform)
        if not user_id:
            return existing_user_id
        if sync_user_id and existing_user_id is not None and existing_user_id != user_id:
            logger.info("Moving purchases of user %s to %s", existing_user_id, user_id)
            self.db.sync_user_id(existing_user_id, user_id)
        return user_id

    def upsert_receipt(self, receipt: Receipt, user_id: str | None) -> Receipt:
        stored = self.db.get_receipt_by_hash(receipt.hash)
        if stored is None:
            receipt.user_id = user_id
            return self.db.create_receipt(receipt)
        if user_id and stored.user_id != user_id:
            stored.user_id = user_id
            return self.db.update_receipt(stored)
        return stored

    def save_purchase(self, draft: Purchase, receipt: Receipt, user_id: str | None) -> Purchase:
        draft.receipt_id = receipt.id
        if user_id:
            draft.user_id = user_id

        if draft.original_order_id:
            original = self.db.get_purchase_by_order_id(draft.original_order_id, draft.platform)
            if original is not None:
                draft.original_purchase_id = original.id
        if draft.linked_order_id:
            linked = self.db.get_purchase_by_order_id(draft.linked_order_id, draft.platform)
            if linked is not None:
                draft.linked_purchase_id = linked.id

        stored = self.db.get_purchase_by_order_id(draft.order_id, draft.platform)
        if stored is None:
            created = self.db.create_purchase(draft)
            if created.order_id == created.original_order_id:
                created.original_purchase_id = created.id
                created = self.db.update_purchase(created.id, created)
            return created

        draft.id = stored.id
        if stored.receipt_date < draft.receipt_date:
            candidate = draft
            if candidate.user_id is None:
                candidate.user_id = stored.user_id
            # A revalidation that only moved the receipt keeps the stored receipt stamp.
            if purchases_equal(
                stored,
                replace(candidate, receipt_id=stored.receipt_id, receipt_date=stored.receipt_date),
            ):
                return stored
        else:
            candidate = merge_forward(stored, draft)

        if purchases_equal(stored, candidate):
            return stored
        return self.db.update_purchase(stored.id, candidate)


def merge_forward(stored: Purchase, draft: Purchase) -> Purchase:
    """Keep the stored state of a purchase seen in an older or equal receipt.

    Only chain links and ownership that the stored row is still missing are filled in.
    """
    return replace(
        stored,
        original_purchase_id=stored.original_purchase_id or draft.original_purchase_id,
        linked_purchase_id=stored.linked_purchase_id or draft.linked_purchase_id,
        user_id=stored.user_id or draft.user_id,
    )
