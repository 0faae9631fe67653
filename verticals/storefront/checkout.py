"""Order assembly.

Checkout turns a cart into an order in one all-or-nothing pass:

1. snapshot the cart lines that are not saved for later
2. reserve stock per line: flash sale pool, bundle allowance or plain
   catalog stock
3. price the order: coupon, loyalty points, loyalty reward, shipping, tax
4. commit the loyalty deduction and persist the order
5. clear the cart and send the confirmation in the background

Every committed step pushes its undo onto a `CompensationStack`; a failure
at any later step rolls them back newest-first.

Payment happens afterwards through `pay`, with a hard timeout. A timeout
leaves the order pending with payment status `unknown`; stock stays
reserved until the order is confirmed, cancelled or swept.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from opentelemetry import trace

from core.observability.logging_setup import log_event
from core.observability.otel_setup import get_tracer
from core.resilience import (
    CompensationStack,
    DeadLetterQueue,
    IdempotencyStatus,
    IdempotencyStore,
    generate_idempotency_key,
)
from patterns.domain_config import StorefrontConfig
from patterns.workflow_states import WorkflowTransition
from verticals.storefront.bundles import BundleEngine
from verticals.storefront.cart import CartLine, CartService, LineSource
from verticals.storefront.config import config as default_config
from verticals.storefront.errors import (
    CheckoutInProgress,
    EmptyCart,
    InvalidStateTransition,
    PaymentFailed,
    ProductUnavailable,
    RedemptionUnavailable,
)
from verticals.storefront.flash_sales import FlashSaleEngine
from verticals.storefront.loyalty import LoyaltyLedger, Reward, RewardType
from verticals.storefront.models.schemas import CheckoutRequest
from verticals.storefront.money import (
    HUNDRED,
    ZERO,
    D,
    FixedDiscount,
    PercentageDiscount,
    evaluate_discount,
    round_money,
)
from verticals.storefront.orders import (
    InMemoryOrderStore,
    Order,
    OrderItem,
    OrderPricing,
    OrderStatus,
    OrderStore,
    PaymentStatus,
    Reservation,
    new_workflow,
)
from verticals.storefront.ports import Catalog, LoggingNotifier, Notifier, PaymentGateway

logger = logging.getLogger(__name__)

NOTIFICATION_QUEUE = "notifications"


class OrderAssembly:
    """Checkout, payment and the order lifecycle.

    Usage::

        assembly = OrderAssembly(carts, catalog, flash_sales, bundles, loyalty, gateway)
        order = await assembly.checkout("u1", CheckoutRequest(idempotency_key="cart-42"))
        order = await assembly.pay(order.id)
    """

    def __init__(
        self,
        carts: CartService,
        catalog: Catalog,
        flash_sales: FlashSaleEngine,
        bundles: BundleEngine,
        loyalty: LoyaltyLedger,
        payments: PaymentGateway,
        store: Optional[OrderStore] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[StorefrontConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        idempotency: Optional[IdempotencyStore] = None,
        dead_letters: Optional[DeadLetterQueue] = None,
        tracer: Optional[trace.Tracer] = None,
    ):
        self.carts = carts
        self.catalog = catalog
        self.flash_sales = flash_sales
        self.bundles = bundles
        self.loyalty = loyalty
        self.payments = payments
        self.store = store or InMemoryOrderStore()
        self.notifier = notifier or LoggingNotifier()
        self.config = config or default_config
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.idempotency = idempotency or IdempotencyStore(self.config.checkout.idempotency_ttl_seconds)
        self.dead_letters = dead_letters or DeadLetterQueue()
        self.tracer = tracer or get_tracer(__name__)
        self._background: set[asyncio.Task] = set()

    # -- Checkout --

    async def checkout(self, user_id: str, request: Optional[CheckoutRequest] = None) -> Order:
        """Place an order from the user's cart.

        With an idempotency key, a repeated call returns the order the first
        call created instead of reserving stock again.
        """
        request = request or CheckoutRequest()
        key = None
        if request.idempotency_key:
            key = generate_idempotency_key("checkout", user_id=user_id, key=request.idempotency_key)
            existing = self.idempotency.check(key)
            if existing is not None and existing.status == IdempotencyStatus.COMPLETED:
                log_event(logger, "info", "checkout.replayed", user_id=user_id,
                          order_id=existing.result["order_id"])
                return await self.store.get(existing.result["order_id"])
            if self.idempotency.reserve(key, user_id, "checkout") is None:
                raise CheckoutInProgress("Checkout already in progress", {"user_id": user_id})

        with self.tracer.start_as_current_span("checkout", attributes={"user.id": user_id}) as span:
            try:
                order = await self._checkout(user_id, request, key)
            except Exception as exc:
                if key:
                    self.idempotency.fail(key, str(exc))
                error = getattr(exc, "code", type(exc).__name__)
                span.set_attribute("checkout.error", error)
                log_event(logger, "warning", "checkout.failed", user_id=user_id, error=error)
                raise
            span.set_attribute("order.number", order.order_number)
            span.set_attribute("order.total", str(order.pricing.total))

        if key:
            self.idempotency.complete(key, {"order_id": order.id})
        return order

    async def _checkout(self, user_id: str, request: CheckoutRequest, key: Optional[str]) -> Order:
        cart = self.carts.get_cart(user_id)
        lines = list(cart.active_lines)
        if not lines:
            raise EmptyCart("Cart is empty", {"user_id": user_id})
        coupon = cart.coupon

        stack = CompensationStack()
        try:
            reservations = []
            for line in lines:
                with self.tracer.start_as_current_span("checkout.reserve", attributes={
                    "line.source": line.source.value, "line.product_id": line.product_id,
                    "line.quantity": line.quantity,
                }):
                    reservation = await self._reserve_line(user_id, line)
                reservations.append(reservation)
                stack.push(
                    f"release {reservation.kind} {reservation.product_id}",
                    functools.partial(self._release, user_id, reservation),
                )

            subtotal = round_money(sum((line.line_total for line in lines), ZERO))
            coupon_discount = coupon.discount_for(subtotal) if coupon else ZERO

            loyalty_discount = ZERO
            if request.points_to_apply:
                offer = self.loyalty.apply_points_as_discount(
                    user_id, request.points_to_apply, subtotal - coupon_discount
                )
                loyalty_discount = offer.discount_amount

            reward_discount, free_shipping, points_multiplier = ZERO, False, Decimal("1")
            redemption = None
            if request.redemption_code:
                redemption, reward = self.loyalty.validate_redemption(request.redemption_code, user_id)
                reward_discount, free_shipping, points_multiplier = self._reward_terms(
                    reward, lines, subtotal, subtotal - coupon_discount - loyalty_discount
                )

            now = self.clock()
            order_number = await self._next_order_number(now)
            order = Order(
                order_number=order_number,
                user_id=user_id,
                items=tuple(self._order_item(line) for line in lines),
                pricing=self._price(subtotal, coupon_discount, loyalty_discount, reward_discount, free_shipping),
                workflow=new_workflow(order_number, history=[
                    WorkflowTransition(from_state="", to_state=OrderStatus.PENDING.value, timestamp=now,
                                       actor="customer", message="Order placed"),
                ]),
                coupon=coupon.to_dict() if coupon else None,
                reservations=tuple(reservations),
                points_applied=request.points_to_apply,
                redemption_code=redemption.code if redemption else None,
                points_multiplier=points_multiplier,
                idempotency_key=key,
                created_at=now,
                updated_at=now,
            )

            if request.points_to_apply:
                self.loyalty.commit_points_discount(user_id, request.points_to_apply, order.id)
                stack.push("refund points", functools.partial(
                    self.loyalty.refund_points, user_id, request.points_to_apply, order.id, "Checkout rolled back",
                ))
            if redemption is not None:
                self.loyalty.mark_redemption_used(redemption.code, order.id, reward_discount)
                stack.push("reactivate redemption",
                           functools.partial(self.loyalty.reactivate_redemption, redemption.code))

            await self.store.save(order)
        except Exception:
            outcome = await stack.rollback()
            log_event(logger, "warning", "checkout.rolled_back", user_id=user_id,
                      compensators_run=outcome.compensators_run,
                      compensators_failed=outcome.compensators_failed)
            raise

        stack.clear()
        cart.clear()
        log_event(logger, "info", "checkout.completed", user_id=user_id, order_id=order.id,
                  order_number=order.order_number, total=str(order.pricing.total))
        self._in_background(self._send_confirmation(order))
        return order

    async def _reserve_line(self, user_id: str, line: CartLine) -> Reservation:
        if line.source == LineSource.FLASH_SALE:
            await self.flash_sales.reserve_stock(line.source_id, line.product_id, line.quantity, user_id)
            return Reservation("flash_sale", line.product_id, line.quantity, line.source_id)
        if line.source == LineSource.BUNDLE:
            await self.bundles.purchase(line.source_id, line.quantity, user_id)
            return Reservation("bundle", line.product_id, line.quantity, line.source_id)

        product = await self.catalog.get_product(line.product_id)
        if not product.is_active:
            raise ProductUnavailable(f"{product.name} is no longer available", {"product_id": product.id})
        await self.catalog.decrement_stock(line.product_id, line.quantity)
        return Reservation("plain", line.product_id, line.quantity)

    async def _release(self, user_id: str, reservation: Reservation) -> None:
        if reservation.kind == "flash_sale":
            await self.flash_sales.release_stock(
                reservation.source_id, reservation.product_id, reservation.quantity, user_id
            )
        elif reservation.kind == "bundle":
            await self.bundles.release(reservation.source_id, reservation.quantity, user_id)
        else:
            await self.catalog.restore_stock(reservation.product_id, reservation.quantity)

    @staticmethod
    def _order_item(line: CartLine) -> OrderItem:
        return OrderItem(
            product_id=line.product_id,
            name=line.name,
            unit_price=line.unit_price,
            quantity=line.quantity,
            line_total=line.line_total,
            sku=line.sku,
            image=line.image,
            variant=line.variant.to_dict() if line.variant else None,
            source=line.source.value,
            source_id=line.source_id,
        )

    def _reward_terms(self, reward: Reward, lines: list[CartLine], subtotal: Decimal,
                      base: Decimal) -> tuple[Decimal, bool, Decimal]:
        """(discount, free shipping, points multiplier) a reward grants."""
        if subtotal < reward.minimum_purchase:
            raise RedemptionUnavailable(
                f"Minimum purchase of {reward.minimum_purchase} required for {reward.name}",
                {"reward_id": reward.id, "subtotal": str(subtotal), "minimum": str(reward.minimum_purchase)},
            )
        if reward.type == RewardType.PERCENTAGE_DISCOUNT:
            return evaluate_discount(PercentageDiscount(reward.value, reward.maximum_discount), base), False, D(1)
        if reward.type == RewardType.FIXED_DISCOUNT:
            return evaluate_discount(FixedDiscount(reward.value), base), False, D(1)
        if reward.type == RewardType.FREE_SHIPPING:
            return ZERO, True, D(1)
        if reward.type == RewardType.POINTS_MULTIPLIER:
            return ZERO, False, max(D(reward.value), D(1))

        for line in lines:
            if line.product_id == reward.product_id:
                return min(line.unit_price, base), False, D(1)
        raise RedemptionUnavailable(
            f"{reward.name} requires its product in the cart",
            {"reward_id": reward.id, "product_id": reward.product_id},
        )

    def _price(self, subtotal: Decimal, coupon_discount: Decimal, loyalty_discount: Decimal,
               reward_discount: Decimal, free_shipping: bool) -> OrderPricing:
        pricing = self.config.pricing
        total_discount = min(round_money(coupon_discount + loyalty_discount + reward_discount), subtotal)
        discounted = subtotal - total_discount

        threshold = D(pricing.free_shipping_threshold)
        if free_shipping or (threshold > ZERO and subtotal >= threshold):
            shipping = ZERO
        else:
            shipping = round_money(pricing.shipping_flat_rate)
        tax = round_money(discounted * D(pricing.tax_rate) / HUNDRED)
        total = max(round_money(subtotal + shipping + tax - total_discount), ZERO)

        return OrderPricing(
            subtotal=subtotal,
            shipping=shipping,
            tax=tax,
            coupon_discount=round_money(coupon_discount),
            loyalty_discount=round_money(loyalty_discount),
            reward_discount=round_money(reward_discount),
            total_discount=total_discount,
            total=total,
            currency=pricing.currency,
        )

    async def _next_order_number(self, now: datetime) -> str:
        prefix = self.config.checkout.order_number_prefix
        while True:
            number = f"{prefix}-{now:%y%m}-{secrets.randbelow(1_000_000):06d}"
            if await self.store.get_by_number(number) is None:
                return number

    # -- Notifications --

    def _in_background(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_confirmation(self, order: Order) -> None:
        try:
            await self.notifier.send_order_confirmation(order, order.user_id)
        except Exception as exc:
            logger.exception("order confirmation failed for %s", order.order_number)
            self.dead_letters.enqueue(
                queue_name=NOTIFICATION_QUEUE,
                subject=order.order_number,
                event_type="order_confirmation",
                payload={"order_id": order.id, "user_id": order.user_id},
                error=str(exc),
            )

    async def drain_notifications(self) -> None:
        """Wait for background notifications still in flight."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def replay_notifications(self, limit: int = 50) -> int:
        """Re-send dead-lettered order confirmations. Returns how many went out."""
        async def resend(payload: dict) -> None:
            order = await self.store.get(payload["order_id"])
            await self.notifier.send_order_confirmation(order, payload["user_id"])

        sent = 0
        for letter in self.dead_letters.list_pending(NOTIFICATION_QUEUE, limit=limit):
            if await self.dead_letters.replay(letter.id, resend):
                sent += 1
            else:
                log_event(logger, "warning", "notification.replay_failed",
                          subject=letter.subject, retries=letter.retry_count, status=letter.status.value)
        self.dead_letters.purge_resolved(NOTIFICATION_QUEUE)
        if sent:
            log_event(logger, "info", "notification.replayed", count=sent)
        return sent

    # -- Payment --

    async def pay(self, order_id: str, customer_ref: Optional[str] = None) -> Order:
        """Charge the order total through the gateway.

        Success confirms the order and earns points. A gateway failure
        raises PaymentFailed and leaves the order pending. A timeout marks
        the payment `unknown` and leaves everything else as it was.
        """
        order = await self.store.get(order_id)
        if order.payment_status == PaymentStatus.PAID:
            return order
        if order.status != OrderStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot pay an order that is {order.status.value}",
                {"order_id": order_id, "status": order.status.value},
            )
        if order.payment_status == PaymentStatus.UNKNOWN:
            raise InvalidStateTransition(
                "Payment outcome is unknown; confirm or cancel the order instead of charging again",
                {"order_id": order_id, "payment_status": order.payment_status.value},
            )

        key = generate_idempotency_key("pay", order_id=order_id)
        if self.idempotency.reserve(key, order.user_id, "pay") is None:
            raise CheckoutInProgress("Payment already in progress", {"order_id": order_id})

        timeout = self.config.checkout.payment_timeout_seconds
        try:
            with self.tracer.start_as_current_span("payment.charge", attributes={
                "order.id": order_id, "payment.amount": str(order.pricing.total),
            }) as span:
                result = await asyncio.wait_for(
                    self.payments.charge(order.pricing.total, order.pricing.currency, customer_ref or order.user_id),
                    timeout=timeout,
                )
                span.set_attribute("payment.status", "captured" if result.ok else "declined")
        except asyncio.TimeoutError:
            self.idempotency.fail(key, "timeout")
            order.payment_status = PaymentStatus.UNKNOWN
            order.updated_at = self.clock()
            await self.store.save(order)
            log_event(logger, "warning", "payment.timeout", order_id=order_id, timeout=timeout)
            return order
        except Exception as exc:
            self.idempotency.fail(key, str(exc))
            await self._payment_failed(order, str(exc))
            raise PaymentFailed("Payment failed", {"order_id": order_id, "reason": str(exc)}) from exc

        if not result.ok:
            self.idempotency.fail(key, result.error or "declined")
            await self._payment_failed(order, result.error or "declined")
            raise PaymentFailed("Payment was declined",
                                {"order_id": order_id, "reason": result.error or "declined"})

        self.idempotency.complete(key, {"transaction_ref": result.transaction_ref})
        return await self._mark_paid(order, result.transaction_ref)

    async def confirm_payment(self, order_id: str, transaction_ref: str) -> Order:
        """Reconcile a payment the gateway later reported as captured."""
        order = await self.store.get(order_id)
        if order.payment_status == PaymentStatus.PAID:
            return order
        return await self._mark_paid(order, transaction_ref)

    async def _payment_failed(self, order: Order, reason: str) -> None:
        order.payment_status = PaymentStatus.FAILED
        order.updated_at = self.clock()
        await self.store.save(order)
        log_event(logger, "warning", "payment.failed", order_id=order.id, reason=reason)

    async def _mark_paid(self, order: Order, transaction_ref: Optional[str]) -> Order:
        now = self.clock()
        order.transition(OrderStatus.CONFIRMED, actor="payment", message="Payment captured", at=now)
        order.payment_status = PaymentStatus.PAID
        order.transaction_ref = transaction_ref
        self.loyalty.earn_points(order.user_id, order.pricing.total, order.id, order.points_multiplier)
        await self.store.save(order)
        log_event(logger, "info", "payment.captured", order_id=order.id,
                  transaction_ref=transaction_ref, total=str(order.pricing.total))
        return order

    # -- Lifecycle --

    async def cancel(self, order_id: str, reason: str = "", actor: str = "customer") -> Order:
        """Cancel a pending or confirmed order and give everything back."""
        order = await self.store.get(order_id)
        order.transition(OrderStatus.CANCELLED, actor=actor, message=reason or "Order cancelled",
                         at=self.clock())
        order.cancellation_reason = reason or None

        undo = CompensationStack()
        for reservation in order.reservations:
            undo.push(f"release {reservation.kind} {reservation.product_id}",
                      functools.partial(self._release, order.user_id, reservation))
        if order.points_applied:
            undo.push("refund points", functools.partial(
                self.loyalty.refund_points, order.user_id, order.points_applied, order.id, "Order cancelled",
            ))
        if order.redemption_code:
            undo.push("reactivate redemption",
                      functools.partial(self.loyalty.reactivate_redemption, order.redemption_code))
        outcome = await undo.rollback()

        if order.payment_status == PaymentStatus.PAID:
            await self._refund(order, reason or "cancelled")

        await self.store.save(order)
        log_event(logger, "info", "order.cancelled", order_id=order.id, actor=actor,
                  released=outcome.compensators_run, release_failures=outcome.compensators_failed)
        return order

    async def _refund(self, order: Order, reason: str) -> None:
        try:
            result = await self.payments.refund(order.transaction_ref, order.pricing.total, reason)
        except Exception:
            logger.exception("refund failed for %s", order.order_number)
            return
        if result.ok:
            order.payment_status = PaymentStatus.REFUNDED
        else:
            log_event(logger, "error", "payment.refund_failed", order_id=order.id, reason=result.error)

    async def update_status(
        self,
        order_id: str,
        status: OrderStatus,
        actor: str = "admin",
        message: str = "",
        tracking_number: Optional[str] = None,
        carrier: Optional[str] = None,
    ) -> Order:
        """Administrative status change."""
        status = OrderStatus(status)
        if status == OrderStatus.CANCELLED:
            return await self.cancel(order_id, message, actor)

        order = await self.store.get(order_id)
        order.transition(status, actor=actor, message=message or f"Order {status.value}", at=self.clock())
        if tracking_number:
            order.tracking_number = tracking_number
        if carrier:
            order.carrier = carrier
        if status == OrderStatus.REFUNDED and order.payment_status == PaymentStatus.PAID:
            await self._refund(order, message or "refunded")

        await self.store.save(order)
        log_event(logger, "info", "order.status_changed", order_id=order.id,
                  status=status.value, actor=actor)
        return order

    async def expire_stale_orders(self, max_age: Optional[timedelta] = None) -> list[str]:
        """Cancel unpaid pending orders older than `max_age`.

        Orders whose payment outcome is `unknown` are left for manual
        reconciliation. Returns the ids of cancelled orders.
        """
        max_age = max_age or timedelta(minutes=self.config.checkout.pending_order_ttl_minutes)
        cutoff = self.clock() - max_age
        expired = []
        for order in await self.store.list_pending_before(cutoff):
            if order.payment_status == PaymentStatus.UNKNOWN:
                log_event(logger, "warning", "order.reconcile_needed", order_id=order.id)
                continue
            await self.cancel(order.id, "Payment not received in time", actor="system")
            expired.append(order.id)
        self.idempotency.cleanup_expired()
        if expired:
            log_event(logger, "info", "order.expired", count=len(expired))
        return expired

    async def orders_for(self, user_id: str) -> list[Order]:
        return await self.store.list_for_user(user_id)
