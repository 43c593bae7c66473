"""
Support Tracker

Ticket lifecycle, the ticket update log and the daily, agent and category
support metrics.
"""

from collections import Counter, defaultdict
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from commerce_tracking.coordination import KeyedLock
from commerce_tracking.errors import NotFoundError, TrackingError, ValidationError
from commerce_tracking.notifications.email import NotificationDispatcher
from commerce_tracking.store.base import TabularStore
from commerce_tracking.store.schemas import (
    AGENT_PERFORMANCE,
    CATEGORY_ANALYSIS,
    SUPPORT_DAILY_METRICS,
    SUPPORT_TICKETS,
    TICKET_UPDATES,
)

from .base import BaseTracker, Clock
from .formatting import (
    format_date,
    format_timestamp,
    generate_id,
    mean,
    minutes_between,
    money,
    parse_timestamp,
    ratio,
    to_int,
    utcnow,
)
from .models import (
    SupportTicket,
    SyncResult,
    TicketPriority,
    TicketRequest,
    TicketStatus,
)

logger = structlog.get_logger(__name__)

# Maximum first-response minutes per priority
SLA_THRESHOLDS_MINUTES: Dict[TicketPriority, int] = {
    TicketPriority.URGENT: 60,
    TicketPriority.HIGH: 240,
    TicketPriority.MEDIUM: 480,
    TicketPriority.LOW: 1440,
}

# Status -> (stamp field, elapsed-minutes field); written on first entry only
LIFECYCLE_STAMPS: Dict[TicketStatus, Tuple[str, str]] = {
    TicketStatus.IN_PROGRESS: ("first_response_at", "response_time"),
    TicketStatus.RESOLVED: ("resolved_at", "resolution_time"),
}

RESOLVED_STATUSES = (TicketStatus.RESOLVED, TicketStatus.CLOSED)
PENDING_STATUSES = (TicketStatus.OPEN, TicketStatus.IN_PROGRESS)
ACTIVE_STATUSES = (TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.WAITING_CUSTOMER)


# =============================================================================
# ROW MAPPING
# =============================================================================

def _optional(value: Optional[int]) -> str:
    return "" if value is None else str(value)


def ticket_to_row(ticket: SupportTicket) -> List:
    return [
        ticket.ticket_id,
        ticket.customer_id,
        ticket.customer_email,
        ticket.customer_name,
        ticket.subject,
        ticket.category.value,
        ticket.priority.value,
        ticket.status.value,
        ticket.assigned_to,
        ticket.channel.value,
        ticket.order_id,
        format_timestamp(ticket.created_at),
        format_timestamp(ticket.updated_at),
        format_timestamp(ticket.first_response_at),
        format_timestamp(ticket.resolved_at),
        _optional(ticket.response_time),
        _optional(ticket.resolution_time),
        _optional(ticket.satisfaction_score),
        ",".join(ticket.tags),
        ticket.notes,
    ]


def row_to_ticket(row: List[str]) -> SupportTicket:
    created_at = parse_timestamp(row[11]) or utcnow()
    return SupportTicket(
        ticket_id=row[0],
        customer_id=row[1],
        customer_email=row[2],
        customer_name=row[3],
        subject=row[4],
        category=row[5] or "general",
        priority=row[6] or "medium",
        status=row[7] or "open",
        assigned_to=row[8],
        channel=row[9] or "email",
        order_id=row[10],
        created_at=created_at,
        updated_at=parse_timestamp(row[12]) or created_at,
        first_response_at=parse_timestamp(row[13]),
        resolved_at=parse_timestamp(row[14]),
        response_time=to_int(row[15]) if row[15] else None,
        resolution_time=to_int(row[16]) if row[16] else None,
        satisfaction_score=to_int(row[17]) if row[17] else None,
        tags=[tag.strip() for tag in row[18].split(",") if tag.strip()],
        notes=row[19],
    )


# =============================================================================
# METRICS
# =============================================================================

def sla_compliance(tickets: Iterable[SupportTicket]) -> float:
    """
    Percentage of responded tickets answered within their priority's SLA.

    Tickets without a response time are left out; 100 when none remain.
    """
    responded = [t for t in tickets if t.response_time is not None]
    if not responded:
        return 100.0
    within = sum(1 for t in responded if t.response_time <= SLA_THRESHOLDS_MINUTES[t.priority])
    return within / len(responded) * 100


def escalation_rate(tickets: Iterable[SupportTicket]) -> float:
    tickets = list(tickets)
    return ratio(sum(1 for t in tickets if t.is_escalated), len(tickets))


def _averages(tickets: List[SupportTicket]) -> Tuple[float, float, float]:
    return (
        mean(t.response_time for t in tickets if t.response_time is not None),
        mean(t.resolution_time for t in tickets if t.resolution_time is not None),
        mean(t.satisfaction_score for t in tickets if t.satisfaction_score is not None),
    )


def stamp_transition(ticket: SupportTicket, status: TicketStatus, now: datetime) -> Dict:
    """Model changes for moving a ticket into ``status``"""
    changes: Dict = {"status": status, "updated_at": now}
    stamp = LIFECYCLE_STAMPS.get(status)
    if stamp is not None:
        stamp_field, minutes_field = stamp
        if getattr(ticket, stamp_field) is None:
            changes[stamp_field] = now
            changes[minutes_field] = minutes_between(ticket.created_at, now)
    return changes


class SupportTracker(BaseTracker):
    """Support tickets and their derived metrics"""

    def __init__(
        self,
        store: TabularStore,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Optional[Clock] = None,
        locks: Optional[KeyedLock] = None,
    ):
        super().__init__(store, clock, locks)
        self.notifier = notifier

    async def get_ticket(self, ticket_id: str) -> Optional[SupportTicket]:
        row = await self.find_by_key(SUPPORT_TICKETS, ticket_id)
        return row_to_ticket(row) if row else None

    async def list_tickets(self) -> List[SupportTicket]:
        return [row_to_ticket(row) for row in await self.read_rows(SUPPORT_TICKETS)]

    async def tickets_created_on(self, day: date) -> List[SupportTicket]:
        return [t for t in await self.list_tickets() if t.created_at.date() == day]

    async def _load(self, ticket_id: str) -> Tuple[int, SupportTicket]:
        found = await self.find(SUPPORT_TICKETS, lambda row: row[0] == ticket_id)
        if found is None:
            raise NotFoundError("Ticket", ticket_id)
        row_number, row = found
        return row_number, row_to_ticket(row)

    async def _save(self, row_number: int, ticket: SupportTicket) -> None:
        await self.store.update_range(SUPPORT_TICKETS.row_range(row_number), [ticket_to_row(ticket)])

    async def _log_update(
        self,
        ticket_id: str,
        update_type: str,
        previous_status: str,
        new_status: str,
        updated_by: str,
        message: str,
        now: datetime,
        internal_note: str = "",
        customer_visible: bool = True,
    ) -> None:
        await self.store.append_rows(TICKET_UPDATES.name, [[
            ticket_id,
            update_type,
            previous_status,
            new_status,
            updated_by,
            format_timestamp(now),
            message,
            internal_note,
            customer_visible,
        ]])

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def create_ticket(self, request: TicketRequest) -> str:
        """Open a ticket and return its id"""
        now = self.clock()
        ticket = SupportTicket(
            ticket_id=generate_id("TICK", now),
            status=TicketStatus.OPEN,
            created_at=now,
            updated_at=now,
            **request.model_dump(),
        )

        async with self.lock("ticket", ticket.ticket_id):
            await self.store.append_rows(SUPPORT_TICKETS.name, [ticket_to_row(ticket)])
            await self._log_update(
                ticket.ticket_id,
                "create",
                "",
                TicketStatus.OPEN.value,
                ticket.customer_email or "Customer",
                f"Ticket created: {ticket.subject}",
                now,
            )

        logger.info(
            "Support ticket created",
            ticket_id=ticket.ticket_id,
            priority=ticket.priority.value,
            category=ticket.category.value,
        )
        if ticket.priority == TicketPriority.URGENT and self.notifier is not None:
            await self.notifier.send_support_urgent_alert(
                ticket.ticket_id, ticket.customer_email, ticket.subject, ticket.category.value
            )
        return ticket.ticket_id

    async def update_ticket_status(
        self,
        ticket_id: str,
        new_status: TicketStatus,
        updated_by: str,
        message: Optional[str] = None,
        assigned_to: Optional[str] = None,
    ) -> SupportTicket:
        """
        Move a ticket to ``new_status``.

        The first entry into ``in_progress`` stamps the first response and
        the first entry into ``resolved`` stamps the resolution; later
        entries leave both untouched.

        Raises:
            NotFoundError: no ticket with that id
        """
        now = self.clock()
        async with self.lock("ticket", ticket_id):
            row_number, ticket = await self._load(ticket_id)
            previous = ticket.status
            changes = stamp_transition(ticket, new_status, now)
            if assigned_to:
                changes["assigned_to"] = assigned_to
            ticket = ticket.model_copy(update=changes)
            await self._save(row_number, ticket)
            await self._log_update(
                ticket_id,
                "status_change",
                previous.value,
                new_status.value,
                updated_by,
                message or f"Status changed from {previous.value} to {new_status.value}",
                now,
            )

        logger.info(
            "Ticket status updated",
            ticket_id=ticket_id,
            previous_status=previous.value,
            new_status=new_status.value,
        )
        return ticket

    async def assign_ticket(self, ticket_id: str, assigned_to: str, assigned_by: str) -> SupportTicket:
        """Assign a ticket; open tickets move to in_progress"""
        now = self.clock()
        async with self.lock("ticket", ticket_id):
            row_number, ticket = await self._load(ticket_id)
            previous = ticket.status
            if previous == TicketStatus.OPEN:
                changes = stamp_transition(ticket, TicketStatus.IN_PROGRESS, now)
            else:
                changes = {"updated_at": now}
            changes["assigned_to"] = assigned_to
            ticket = ticket.model_copy(update=changes)
            await self._save(row_number, ticket)
            await self._log_update(
                ticket_id,
                "assignment",
                previous.value,
                ticket.status.value,
                assigned_by,
                f"Ticket assigned to {assigned_to}",
                now,
                customer_visible=False,
            )

        logger.info("Ticket assigned", ticket_id=ticket_id, assigned_to=assigned_to)
        return ticket

    async def add_customer_satisfaction_score(
        self,
        ticket_id: str,
        score: int,
        feedback: Optional[str] = None,
    ) -> SupportTicket:
        """
        Raises:
            ValidationError: score is not an integer from 1 to 5
            NotFoundError: no ticket with that id
        """
        if isinstance(score, bool) or not isinstance(score, int) or not 1 <= score <= 5:
            raise ValidationError(f"Satisfaction score must be an integer from 1 to 5, got {score!r}")

        now = self.clock()
        async with self.lock("ticket", ticket_id):
            row_number, ticket = await self._load(ticket_id)
            ticket = ticket.model_copy(update={"satisfaction_score": score, "updated_at": now})
            await self._save(row_number, ticket)
            message = f"Satisfaction score: {score}/5"
            if feedback:
                message += f" - {feedback}"
            await self._log_update(
                ticket_id,
                "satisfaction",
                ticket.status.value,
                ticket.status.value,
                ticket.customer_email or "Customer",
                message,
                now,
            )

        logger.info("Satisfaction score recorded", ticket_id=ticket_id, score=score)
        return ticket

    # =========================================================================
    # METRICS TABLES
    # =========================================================================

    async def update_daily_metrics(self, day: Optional[date] = None) -> Dict:
        day = day or self.today()
        tickets = await self.tickets_created_on(day)
        avg_response, avg_resolution, avg_satisfaction = _averages(tickets)
        metrics = {
            "date": format_date(day),
            "tickets_created": len(tickets),
            "tickets_resolved": sum(1 for t in tickets if t.status in RESOLVED_STATUSES),
            "tickets_pending": sum(1 for t in tickets if t.status in PENDING_STATUSES),
            "average_response_time": avg_response,
            "average_resolution_time": avg_resolution,
            "customer_satisfaction": avg_satisfaction,
            "sla_compliance": sla_compliance(tickets),
            "escalation_rate": escalation_rate(tickets),
        }
        await self.upsert_by_date(SUPPORT_DAILY_METRICS, day, [
            metrics["date"],
            metrics["tickets_created"],
            metrics["tickets_resolved"],
            metrics["tickets_pending"],
            money(avg_response),
            money(avg_resolution),
            money(avg_satisfaction),
            money(metrics["sla_compliance"]),
            money(metrics["escalation_rate"]),
        ])
        logger.info("Support daily metrics updated", date=metrics["date"], tickets=len(tickets))
        return metrics

    async def update_agent_performance(self, day: Optional[date] = None) -> int:
        """Rewrite the day's Agent Performance rows, one per assignee"""
        day = day or self.today()
        day_str = format_date(day)
        by_agent: Dict[str, List[SupportTicket]] = defaultdict(list)
        for ticket in await self.tickets_created_on(day):
            if ticket.assigned_to:
                by_agent[ticket.assigned_to].append(ticket)

        rows = []
        for agent in sorted(by_agent):
            tickets = by_agent[agent]
            avg_response, avg_resolution, avg_satisfaction = _averages(tickets)
            rows.append([
                agent,
                agent if "@" in agent else "",
                day_str,
                len(tickets),
                sum(1 for t in tickets if t.status in RESOLVED_STATUSES),
                money(avg_response),
                money(avg_resolution),
                money(avg_satisfaction),
                sum(1 for t in tickets if t.is_escalated),
                sum(1 for t in tickets if t.status in ACTIVE_STATUSES),
            ])

        written = await self.rewrite(AGENT_PERFORMANCE, rows, keep=lambda row: row[2] != day_str)
        logger.info("Agent performance updated", date=day_str, agents=written)
        return written

    async def update_category_analysis(self, day: Optional[date] = None) -> int:
        """Rewrite the day's Category Analysis rows, one per category"""
        day = day or self.today()
        day_str = format_date(day)
        by_category: Dict[str, List[SupportTicket]] = defaultdict(list)
        for ticket in await self.tickets_created_on(day):
            by_category[ticket.category.value].append(ticket)

        rows = []
        for category in sorted(by_category):
            tickets = by_category[category]
            _, avg_resolution, avg_satisfaction = _averages(tickets)
            tags = Counter(tag for t in tickets for tag in t.tags)
            rows.append([
                category,
                day_str,
                len(tickets),
                sum(1 for t in tickets if t.status in RESOLVED_STATUSES),
                money(avg_resolution / 60),
                money(avg_satisfaction),
                money(escalation_rate(tickets)),
                ", ".join(tag for tag, _ in tags.most_common(3)),
            ])

        written = await self.rewrite(CATEGORY_ANALYSIS, rows, keep=lambda row: row[1] != day_str)
        logger.info("Category analysis updated", date=day_str, categories=written)
        return written

    async def sync_support_data(self, day: Optional[date] = None) -> SyncResult:
        result = SyncResult()
        day = day or self.today()

        for name, step in (
            ("Agent performance", self.update_agent_performance),
            ("Category analysis", self.update_category_analysis),
        ):
            try:
                result.records_updated += await step(day)
            except TrackingError as e:
                result.errors.append(f"{name}: {e}")

        try:
            metrics = await self.update_daily_metrics(day)
            result.records_processed = metrics["tickets_created"]
        except TrackingError as e:
            result.errors.append(f"Daily metrics: {e}")

        logger.info("Support sync completed", date=format_date(day), errors=len(result.errors))
        return result
