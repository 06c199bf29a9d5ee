"""
Subscription Management

Subscription lifecycle: creation, suspension, cancellation, plan changes
and period advancement after invoicing.
"""

import copy
from datetime import date, timedelta
from typing import Dict, List, Optional

import structlog

from .base import (
    BillingCycle,
    Customer,
    CustomerStore,
    NotFoundError,
    PlanChange,
    PlanChangeTiming,
    Subscription,
    SubscriptionError,
    SubscriptionStatus,
    SubscriptionStore,
    generate_id,
)
from .pricing import AddonCatalog, RatePlanCatalog
from .proration import period_end_for
from .validation import (
    CreateSubscriptionRequest,
    FieldError,
    ValidationError,
    raise_for_errors,
)


logger = structlog.get_logger(__name__)


class InMemorySubscriptionStore(SubscriptionStore):
    """In-memory subscription store implementation."""

    def __init__(self):
        """Initialize in-memory store."""
        self._subscriptions: Dict[str, Subscription] = {}

    async def create(self, subscription: Subscription) -> None:
        """Create subscription."""
        if subscription.id in self._subscriptions:
            raise ValueError(f"Duplicate subscription: {subscription.id}")
        self._subscriptions[subscription.id] = copy.deepcopy(subscription)

    async def get(self, subscription_id: str) -> Optional[Subscription]:
        """Get subscription by ID."""
        sub = self._subscriptions.get(subscription_id)
        return copy.deepcopy(sub) if sub else None

    async def update(self, subscription: Subscription) -> None:
        """Update subscription."""
        if subscription.id not in self._subscriptions:
            raise NotFoundError("Subscription", subscription.id)
        self._subscriptions[subscription.id] = copy.deepcopy(subscription)

    async def list_due(self, as_of: date) -> List[Subscription]:
        """List active subscriptions whose current period has closed."""
        return [
            copy.deepcopy(sub) for sub in self._subscriptions.values()
            if sub.is_due(as_of)
        ]


class InMemoryCustomerStore(CustomerStore):
    """In-memory customer store implementation."""

    def __init__(self):
        self._customers: Dict[str, Customer] = {}

    async def create(self, customer: Customer) -> None:
        if customer.id in self._customers:
            raise ValueError(f"Duplicate customer: {customer.id}")
        self._customers[customer.id] = copy.deepcopy(customer)

    async def get(self, customer_id: str) -> Optional[Customer]:
        customer = self._customers.get(customer_id)
        return copy.deepcopy(customer) if customer else None


class SubscriptionManager:
    """
    Manager for subscription lifecycle.

    A subscription bills one period at a time. After the period is invoiced
    the orchestrator calls ``advance_period``; a subscription with a pending
    cancellation is closed instead of advanced.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        customers: CustomerStore,
        catalog: RatePlanCatalog,
        addons: Optional[AddonCatalog] = None,
    ):
        """Initialize subscription manager."""
        self._store = store
        self._customers = customers
        self._catalog = catalog
        self._addons = addons or AddonCatalog()

    async def create_subscription(self, request: CreateSubscriptionRequest) -> Subscription:
        """
        Create a subscription from a validated request.

        With ``align_to_month`` the first period starts on the 1st and the
        subscription is billed from its start date.
        """
        raise_for_errors(request.validate())

        if await self._customers.get(request.customer_id) is None:
            raise NotFoundError("Customer", request.customer_id)

        plan = self._catalog.require(request.rate_plan_id)
        if not plan.is_active:
            raise SubscriptionError(f"Plan is not active: {plan.id}")
        for addon in request.addons:
            self._addons.require(addon["code"])

        cycle = BillingCycle(request.billing_cycle)
        period_start = request.start_date
        if request.align_to_month:
            period_start = request.start_date.replace(day=1)

        subscription = Subscription(
            id=request.id or generate_id("sub"),
            customer_id=request.customer_id,
            account_id=request.account_id,
            rate_plan_id=plan.id,
            billing_cycle=cycle,
            current_period_start=period_start,
            current_period_end=period_end_for(period_start, cycle),
            activated_on=request.start_date,
            addons=request.subscription_addons(),
        )
        await self._store.create(subscription)

        logger.info(
            "Subscription created",
            subscription_id=subscription.id,
            plan_id=plan.id,
            billing_cycle=cycle.value,
            period_start=subscription.current_period_start.isoformat(),
        )
        return subscription

    async def get_subscription(self, subscription_id: str) -> Subscription:
        """Get subscription by ID or raise NotFoundError."""
        subscription = await self._store.get(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    async def suspend(self, subscription_id: str) -> Subscription:
        """Suspend an active subscription. Suspended subscriptions are not billed."""
        subscription = await self.get_subscription(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise SubscriptionError(
                f"Cannot suspend subscription in {subscription.status.value} status",
                subscription_id,
            )
        subscription.status = SubscriptionStatus.SUSPENDED
        await self._store.update(subscription)
        logger.info("Subscription suspended", subscription_id=subscription_id)
        return subscription

    async def resume(self, subscription_id: str) -> Subscription:
        """Resume a suspended subscription."""
        subscription = await self.get_subscription(subscription_id)
        if subscription.status != SubscriptionStatus.SUSPENDED:
            raise SubscriptionError(
                f"Cannot resume subscription in {subscription.status.value} status",
                subscription_id,
            )
        subscription.status = SubscriptionStatus.ACTIVE
        await self._store.update(subscription)
        logger.info("Subscription resumed", subscription_id=subscription_id)
        return subscription

    async def cancel(self, subscription_id: str, on_date: date) -> Subscription:
        """
        Schedule cancellation effective ``on_date`` (last billed day).

        The current period is still invoiced, prorated up to ``on_date``.
        """
        subscription = await self.get_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            raise SubscriptionError("Subscription is already cancelled", subscription_id)
        if on_date < subscription.current_period_start:
            raise SubscriptionError(
                f"Cancellation date {on_date} is before the current period",
                subscription_id,
            )

        subscription.cancelled_on = on_date
        await self._store.update(subscription)
        logger.info(
            "Subscription cancellation scheduled",
            subscription_id=subscription_id,
            cancelled_on=on_date.isoformat(),
        )
        return subscription

    async def change_plan(
        self,
        subscription_id: str,
        new_plan_id: str,
        effective: str = PlanChangeTiming.NOW.value,
        on_date: Optional[date] = None,
    ) -> Subscription:
        """
        Move a subscription to another rate plan.

        ``now`` switches the plan from ``on_date`` (default today, the first
        day on the new plan) and the period's invoice settles the difference
        between the two plan fees over the remaining days. ``next_cycle``
        schedules the switch for the start of the next period.
        """
        try:
            timing = PlanChangeTiming(effective)
        except ValueError:
            raise ValidationError([FieldError(
                "effective",
                f"must be one of {', '.join(t.value for t in PlanChangeTiming)}",
                "choice",
            )]) from None

        subscription = await self.get_subscription(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise SubscriptionError(
                f"Cannot change plan of subscription in {subscription.status.value} status",
                subscription_id,
            )

        new_plan = self._catalog.require(new_plan_id)
        if not new_plan.is_active:
            raise SubscriptionError(f"Plan is not active: {new_plan.id}", subscription_id)
        if new_plan.id == subscription.rate_plan_id:
            raise SubscriptionError(f"Subscription is already on plan {new_plan.id}", subscription_id)

        if timing == PlanChangeTiming.NEXT_CYCLE:
            subscription.scheduled_plan_id = new_plan.id
            await self._store.update(subscription)
            logger.info(
                "Plan change scheduled",
                subscription_id=subscription_id,
                from_plan_id=subscription.rate_plan_id,
                to_plan_id=new_plan.id,
                effective_on=(subscription.current_period_end + timedelta(days=1)).isoformat(),
            )
            return subscription

        on_date = on_date or date.today()
        first_day = subscription.current_period_start
        if subscription.activated_on and subscription.activated_on > first_day:
            first_day = subscription.activated_on
        last_day = subscription.current_period_end
        if subscription.cancelled_on is not None and subscription.cancelled_on < last_day:
            last_day = subscription.cancelled_on
        if not first_day <= on_date <= last_day:
            raise SubscriptionError(
                f"Plan change date {on_date} is outside the billable days {first_day}..{last_day}",
                subscription_id,
            )

        old_plan = self._catalog.require(subscription.rate_plan_id)
        subscription.plan_changes.append(PlanChange(
            from_plan_id=old_plan.id,
            from_plan_version=old_plan.version,
            to_plan_id=new_plan.id,
            to_plan_version=new_plan.version,
            effective_on=on_date,
        ))
        subscription.rate_plan_id = new_plan.id
        subscription.scheduled_plan_id = None
        await self._store.update(subscription)

        logger.info(
            "Plan changed",
            subscription_id=subscription_id,
            from_plan_id=old_plan.id,
            to_plan_id=new_plan.id,
            effective_on=on_date.isoformat(),
        )
        return subscription

    async def advance_period(self, subscription_id: str) -> Subscription:
        """Move an invoiced subscription to its next period, or close it if cancelled."""
        subscription = await self.get_subscription(subscription_id)

        if (
            subscription.cancelled_on is not None
            and subscription.cancelled_on <= subscription.current_period_end
        ):
            subscription.status = SubscriptionStatus.CANCELLED
            await self._store.update(subscription)
            logger.info("Subscription closed", subscription_id=subscription_id)
            return subscription

        next_start = subscription.current_period_end + timedelta(days=1)
        subscription.current_period_start = next_start
        subscription.current_period_end = period_end_for(next_start, subscription.billing_cycle)
        subscription.plan_changes = []
        if subscription.scheduled_plan_id is not None:
            logger.info(
                "Scheduled plan change applied",
                subscription_id=subscription_id,
                from_plan_id=subscription.rate_plan_id,
                to_plan_id=subscription.scheduled_plan_id,
            )
            subscription.rate_plan_id = subscription.scheduled_plan_id
            subscription.scheduled_plan_id = None
        await self._store.update(subscription)

        logger.debug(
            "Subscription period advanced",
            subscription_id=subscription_id,
            period_start=next_start.isoformat(),
        )
        return subscription
