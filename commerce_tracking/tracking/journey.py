"""
User Journey Tracker

Raw activity and conversion logging, per-session journeys, the daily
conversion funnel and purchase cohorts.
"""

import re
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence

import polars as pl
import structlog

from commerce_tracking.coordination import KeyedLock
from commerce_tracking.errors import TrackingError
from commerce_tracking.store.base import TabularStore
from commerce_tracking.store.schemas import (
    COHORT_ANALYSIS,
    CONVERSION_EVENTS,
    FUNNEL_ANALYSIS,
    USER_ACTIVITIES,
    USER_JOURNEYS,
)

from .base import BaseTracker, Clock
from .formatting import (
    format_date,
    format_timestamp,
    minutes_between,
    money,
    parse_timestamp,
    ratio,
    to_float,
    to_int,
)
from .models import ActivityType, ConversionEvent, ConversionType, SyncResult, UserActivity

logger = structlog.get_logger(__name__)

COHORT_OFFSETS = (0, 1, 2, 3, 6, 12)

# Journey counter column per activity type
_JOURNEY_COUNTERS: Dict[ActivityType, int] = {
    ActivityType.PAGE_VIEW: 4,
    ActivityType.PRODUCT_VIEW: 5,
    ActivityType.CATEGORY_VIEW: 6,
    ActivityType.SEARCH: 7,
    ActivityType.ADD_TO_CART: 8,
    ActivityType.CHECKOUT_STARTED: 9,
    ActivityType.PURCHASE: 10,
}

# Journey conversion stages, in order
_STAGES = ("none", "cart", "checkout", "purchase")
_STAGE_FOR_ACTIVITY = {
    ActivityType.ADD_TO_CART: "cart",
    ActivityType.CHECKOUT_STARTED: "checkout",
}

_TABLET = re.compile(r"ipad|tablet|kindle|playbook|silk|(android(?!.*mobile))", re.IGNORECASE)
_MOBILE = re.compile(r"mobile|iphone|ipod|android|blackberry|opera mini|iemobile", re.IGNORECASE)
_BROWSERS = (
    ("Edge", re.compile(r"edg(e|a|ios)?/", re.IGNORECASE)),
    ("Opera", re.compile(r"opr/|opera", re.IGNORECASE)),
    ("Chrome", re.compile(r"chrome/|crios/", re.IGNORECASE)),
    ("Firefox", re.compile(r"firefox/|fxios/", re.IGNORECASE)),
    ("Safari", re.compile(r"safari/", re.IGNORECASE)),
)


def device_type(user_agent: str) -> str:
    if not user_agent:
        return "unknown"
    if _TABLET.search(user_agent):
        return "tablet"
    if _MOBILE.search(user_agent):
        return "mobile"
    return "desktop"


def browser_name(user_agent: str) -> str:
    for name, pattern in _BROWSERS:
        if pattern.search(user_agent or ""):
            return name
    return "Other"


def funnel_rates(visitors: int, product_views: int, cart: int, checkout: int, purchases: int) -> Dict[str, float]:
    """Stage-to-stage conversion percentages; zero wherever the upstream stage is empty"""
    return {
        "visitor_to_product": ratio(product_views, visitors),
        "product_to_cart": ratio(cart, product_views),
        "cart_to_checkout": ratio(checkout, cart),
        "checkout_to_purchase": ratio(purchases, checkout),
        "overall": ratio(purchases, visitors),
    }


def _month_index(day: date) -> int:
    return day.year * 12 + day.month - 1


def _month_label(index: int) -> str:
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


class JourneyTracker(BaseTracker):
    """
    User activity and conversion analytics.

    Journeys are keyed by ``(user_id, session_id)``; only ``track_purchase``
    marks one as converted to a purchase.
    """

    def __init__(
        self,
        store: TabularStore,
        clock: Optional[Clock] = None,
        locks: Optional[KeyedLock] = None,
    ):
        super().__init__(store, clock, locks)

    # =========================================================================
    # ACTIVITY
    # =========================================================================

    async def track_user_activity(self, activity: UserActivity) -> None:
        await self._record_activity(activity)
        await self._safe_journey_update(activity)

    async def _record_activity(self, activity: UserActivity) -> None:
        await self.store.append_rows(USER_ACTIVITIES.name, [[
            activity.user_id,
            activity.session_id,
            activity.activity_type.value,
            activity.page_url,
            activity.product_id,
            activity.category_id,
            activity.search_query,
            activity.referrer,
            activity.user_agent,
            activity.ip_address,
            format_timestamp(activity.timestamp),
            "" if activity.duration is None else activity.duration,
            device_type(activity.user_agent),
            browser_name(activity.user_agent),
            "Unknown",
            "Unknown",
        ]])
        logger.debug(
            "User activity tracked",
            user_id=activity.user_id,
            session_id=activity.session_id,
            activity_type=activity.activity_type.value,
        )

    async def _safe_journey_update(self, activity: UserActivity, close: bool = False) -> None:
        try:
            await self._update_journey(activity, close=close)
        except TrackingError as e:
            logger.warning(
                "Journey update failed",
                user_id=activity.user_id,
                session_id=activity.session_id,
                error=str(e),
            )

    async def _update_journey(self, activity: UserActivity, close: bool = False) -> None:
        user_id, session_id = activity.user_id, activity.session_id
        async with self.lock("journey", user_id, session_id):
            found = await self.find(USER_JOURNEYS, lambda row: row[0] == user_id and row[1] == session_id)
            if found is None:
                row_number = None
                row = USER_JOURNEYS.pad([user_id, session_id])
                start = end = activity.timestamp
                for column in range(4, 11):
                    row[column] = "0"
                row[13] = _STAGES[0]
            else:
                row_number, row = found
                start = parse_timestamp(row[2]) or activity.timestamp
                end = parse_timestamp(row[3]) or start
                start, end = min(start, activity.timestamp), max(end, activity.timestamp)

            counter = _JOURNEY_COUNTERS.get(activity.activity_type)
            if counter is not None:
                row[counter] = str(to_int(row[counter]) + 1)

            stage = "purchase" if close else _STAGE_FOR_ACTIVITY.get(activity.activity_type)
            current = row[13] if row[13] in _STAGES else _STAGES[0]
            if stage and _STAGES.index(stage) > _STAGES.index(current):
                row[13] = stage

            duration = minutes_between(start, end)
            row[2] = format_timestamp(start)
            row[3] = format_timestamp(end)
            row[11] = str(duration)
            row[12] = "1" if to_int(row[4]) == 1 and duration < 2 else "0"

            if row_number is None:
                await self.store.append_rows(USER_JOURNEYS.name, [row])
            else:
                await self.store.update_range(USER_JOURNEYS.row_range(row_number), [row])

    async def get_journey(self, user_id: str, session_id: str) -> Optional[List[str]]:
        found = await self.find(USER_JOURNEYS, lambda row: row[0] == user_id and row[1] == session_id)
        return found[1] if found else None

    # =========================================================================
    # CONVERSIONS
    # =========================================================================

    async def track_conversion(self, event: ConversionEvent) -> None:
        journey = await self.get_journey(event.user_id, event.session_id)
        touchpoints = 1
        days_to_convert = 0
        if journey is not None:
            touchpoints = sum(to_int(journey[column]) for column in range(4, 11)) or 1
            started = parse_timestamp(journey[2])
            if started is not None:
                days_to_convert = max(0, (event.timestamp - started).days)

        await self.store.append_rows(CONVERSION_EVENTS.name, [[
            event.user_id,
            event.session_id,
            event.conversion_type.value,
            money(event.value),
            ",".join(event.product_ids),
            event.order_id,
            format_timestamp(event.timestamp),
            event.source,
            event.source or "Direct",
            days_to_convert,
            touchpoints,
        ]])
        logger.info(
            "Conversion tracked",
            user_id=event.user_id,
            conversion_type=event.conversion_type.value,
            value=event.value,
        )

    async def track_purchase(
        self,
        user_id: str,
        session_id: str,
        order_id: str,
        value: float,
        product_ids: Sequence[str] = (),
        **context,
    ) -> None:
        """Record the purchase activity and conversion and close the session's journey"""
        now = self.clock()
        activity = UserActivity(
            user_id=user_id,
            session_id=session_id,
            activity_type=ActivityType.PURCHASE,
            timestamp=now,
            **context,
        )
        await self._record_activity(activity)
        await self._safe_journey_update(activity, close=True)
        await self.track_conversion(ConversionEvent(
            user_id=user_id,
            session_id=session_id,
            conversion_type=ConversionType.PURCHASE,
            value=value,
            product_ids=list(product_ids),
            order_id=order_id,
            timestamp=now,
        ))

    # =========================================================================
    # CONVENIENCE
    # =========================================================================

    def _activity(self, user_id: str, session_id: str, activity_type: ActivityType, **fields) -> UserActivity:
        fields.setdefault("timestamp", self.clock())
        return UserActivity(user_id=user_id, session_id=session_id, activity_type=activity_type, **fields)

    async def track_page_view(self, user_id: str, session_id: str, page_url: str, **context) -> None:
        await self.track_user_activity(
            self._activity(user_id, session_id, ActivityType.PAGE_VIEW, page_url=page_url, **context)
        )

    async def track_product_view(
        self,
        user_id: str,
        session_id: str,
        product_id: str,
        category_id: str = "",
        **context,
    ) -> None:
        await self.track_user_activity(self._activity(
            user_id, session_id, ActivityType.PRODUCT_VIEW,
            product_id=product_id, category_id=category_id, **context,
        ))

    async def track_search(self, user_id: str, session_id: str, search_query: str, **context) -> None:
        await self.track_user_activity(
            self._activity(user_id, session_id, ActivityType.SEARCH, search_query=search_query, **context)
        )

    async def track_cart_action(
        self,
        user_id: str,
        session_id: str,
        product_id: str,
        action: str,
        value: float = 0.0,
        **context,
    ) -> None:
        """``action`` is ``add`` or ``remove``; additions also count as a conversion"""
        activity_type = ActivityType.ADD_TO_CART if action == "add" else ActivityType.REMOVE_FROM_CART
        activity = self._activity(user_id, session_id, activity_type, product_id=product_id, **context)
        await self.track_user_activity(activity)
        if activity_type == ActivityType.ADD_TO_CART:
            await self.track_conversion(ConversionEvent(
                user_id=user_id,
                session_id=session_id,
                conversion_type=ConversionType.ADD_TO_CART,
                value=value,
                product_ids=[product_id],
                timestamp=activity.timestamp,
            ))

    # =========================================================================
    # AGGREGATES
    # =========================================================================

    async def activities_on(self, day: date) -> List[List[str]]:
        return [
            row for row in await self.read_rows(USER_ACTIVITIES)
            if (parse_timestamp(row[10]) or datetime.min).date() == day
        ]

    async def update_funnel_analysis(self, day: Optional[date] = None) -> Dict:
        day = day or self.today()
        activities = await self.activities_on(day)

        def count(activity_type: ActivityType) -> int:
            return sum(1 for row in activities if row[2] == activity_type.value)

        visitors = len({row[0] for row in activities})
        product_views = count(ActivityType.PRODUCT_VIEW)
        cart = count(ActivityType.ADD_TO_CART)
        checkout = count(ActivityType.CHECKOUT_STARTED)
        purchases = count(ActivityType.PURCHASE)
        rates = funnel_rates(visitors, product_views, cart, checkout, purchases)

        await self.upsert_by_date(FUNNEL_ANALYSIS, day, [
            format_date(day),
            visitors,
            product_views,
            cart,
            checkout,
            purchases,
            money(rates["visitor_to_product"]),
            money(rates["product_to_cart"]),
            money(rates["cart_to_checkout"]),
            money(rates["checkout_to_purchase"]),
            money(rates["overall"]),
        ])
        logger.info("Funnel analysis updated", date=format_date(day), visitors=visitors, purchases=purchases)
        return {
            "date": format_date(day),
            "visitors": visitors,
            "product_views": product_views,
            "cart_additions": cart,
            "checkout_started": checkout,
            "purchases": purchases,
            **rates,
        }

    async def purchases_frame(self) -> pl.DataFrame:
        rows = [
            row for row in await self.read_rows(CONVERSION_EVENTS)
            if row[2] == ConversionType.PURCHASE.value
        ]
        return pl.DataFrame(
            {
                "user_id": [row[0] for row in rows],
                "purchased_at": [parse_timestamp(row[6]) for row in rows],
                "value": [to_float(row[3]) for row in rows],
            },
            schema={"user_id": pl.Utf8, "purchased_at": pl.Datetime, "value": pl.Float64},
        ).drop_nulls("purchased_at")

    async def generate_cohort_analysis(self, start: date, end: date) -> int:
        """
        Rebuild Cohort Analysis for cohorts first purchasing between ``start`` and ``end``.

        A user's cohort is the month of their first purchase; month-k
        retention is the share of the cohort purchasing again k months later.
        """
        purchases = await self.purchases_frame()
        purchases = purchases.with_columns(
            (
                pl.col("purchased_at").dt.year().cast(pl.Int64) * 12
                + pl.col("purchased_at").dt.month().cast(pl.Int64)
                - 1
            ).alias("month_index")
        )
        firsts = purchases.group_by("user_id").agg(pl.col("month_index").min().alias("cohort"))
        purchases = purchases.join(firsts, on="user_id").with_columns(
            (pl.col("month_index") - pl.col("cohort")).alias("offset")
        )

        sizes = {
            row["cohort"]: row["users"]
            for row in firsts.group_by("cohort").agg(pl.col("user_id").count().alias("users")).iter_rows(named=True)
        }
        revenue = {
            row["cohort"]: row["revenue"]
            for row in purchases.group_by("cohort").agg(pl.col("value").sum().alias("revenue")).iter_rows(named=True)
        }
        active = {
            (row["cohort"], row["offset"]): row["active"]
            for row in purchases.group_by(["cohort", "offset"])
            .agg(pl.col("user_id").n_unique().alias("active"))
            .iter_rows(named=True)
        }

        first_month, last_month = _month_index(start), _month_index(end)
        rows = []
        for cohort in sorted(c for c in sizes if first_month <= c <= last_month):
            users = sizes[cohort]
            total = revenue.get(cohort, 0.0)
            rows.append([
                _month_label(cohort),
                users,
                *(money(ratio(active.get((cohort, k), 0), users)) for k in COHORT_OFFSETS),
                money(total / users if users else 0.0),
                money(total),
            ])

        written = await self.rewrite(COHORT_ANALYSIS, rows)
        logger.info("Cohort analysis generated", cohorts=written, start=format_date(start), end=format_date(end))
        return written

    async def sync_analytics_data(self) -> SyncResult:
        """Today's funnel plus cohorts over the trailing twelve months"""
        result = SyncResult()
        today = self.today()
        try:
            funnel = await self.update_funnel_analysis(today)
            result.records_processed = funnel["visitors"]
        except TrackingError as e:
            result.errors.append(f"Funnel analysis: {e}")

        first_month = _month_index(today) - 12
        start = date(first_month // 12, first_month % 12 + 1, 1)
        try:
            result.records_updated = await self.generate_cohort_analysis(start, today)
        except TrackingError as e:
            result.errors.append(f"Cohort analysis: {e}")

        logger.info("Analytics sync completed", errors=len(result.errors))
        return result
