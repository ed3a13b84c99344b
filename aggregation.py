"""
Read-side grouping over order lines. Everything here is a pure function of
its input; results are recomputed on every read.
"""
from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, List, Optional

from errors import ValidationError
from schemas import (
    Contributor,
    DailyStats,
    MenuItemSummary,
    OrderLine,
    TopItem,
    UnpaidDay,
    UserOrderGroup,
    WeeklyCell,
    WeeklyRollup,
    WeeklyRow,
)


def group_by_user(lines: List[OrderLine], current_user_id: Optional[str] = None) -> List[UserOrderGroup]:
    """Group lines per user, sorted by name.

    With `current_user_id` that user's group comes first and the rest follow
    alphabetically.
    """
    groups: Dict[str, UserOrderGroup] = {}
    for line in lines:
        g = groups.get(line.user_id)
        if g is None:
            g = groups[line.user_id] = UserOrderGroup(
                user_id=line.user_id, user_name=line.user_name, user_email=line.user_email
            )
        g.lines.append(line)
        g.total_amount += line.amount
        g.total_items += line.quantity
        if line.is_paid:
            g.paid_amount += line.amount
        else:
            g.unpaid_amount += line.amount
    for g in groups.values():
        g.all_paid = bool(g.lines) and all(line.is_paid for line in g.lines)

    def key(g: UserOrderGroup):
        return (g.user_id != current_user_id, g.user_name.lower(), g.user_id)

    return sorted(groups.values(), key=key)


def group_by_menu_item(lines: List[OrderLine]) -> List[MenuItemSummary]:
    """How many of each dish were ordered, busiest first."""
    items: Dict[str, MenuItemSummary] = {}
    for line in lines:
        s = items.get(line.menu_item_id)
        if s is None:
            s = items[line.menu_item_id] = MenuItemSummary(
                menu_item_id=line.menu_item_id,
                menu_item_name=line.menu_item_name,
                menu_item_price=line.menu_item_price,
                menu_item_category=line.menu_item_category,
            )
        s.total_quantity += line.quantity
        s.total_amount += line.amount
        s.contributors.append(Contributor(
            user_id=line.user_id, user_name=line.user_name, quantity=line.quantity, note=line.note
        ))
    return sorted(items.values(), key=lambda s: (-s.total_quantity, s.menu_item_name))


def week_days(day: date) -> List[date]:
    """Monday to Friday of the week containing `day`."""
    monday = day - timedelta(days=day.weekday())
    return [monday + timedelta(days=i) for i in range(5)]


def weekly_rollup(lines_by_date: Dict[date, List[OrderLine]], weekdays: List[date]) -> WeeklyRollup:
    if len(weekdays) != 5 or any(d.weekday() != i for i, d in enumerate(weekdays)):
        raise ValidationError("A weekly rollup needs the five days Monday to Friday")

    per_user: Dict[str, Dict[date, List[OrderLine]]] = defaultdict(lambda: defaultdict(list))
    names: Dict[str, OrderLine] = {}
    for day in weekdays:
        for line in lines_by_date.get(day, []):
            per_user[line.user_id][day].append(line)
            names.setdefault(line.user_id, line)

    rows: List[WeeklyRow] = []
    day_totals = {day: 0 for day in weekdays}
    for user_id, days in per_user.items():
        first = names[user_id]
        row = WeeklyRow(
            user_id=user_id, user_name=first.user_name, user_email=first.user_email,
            cells={day: None for day in weekdays},
        )
        for day, day_lines in days.items():
            amount = sum(line.amount for line in day_lines)
            paid = sum(line.amount for line in day_lines if line.is_paid)
            row.cells[day] = WeeklyCell(
                lines=day_lines, amount=amount, all_paid=all(line.is_paid for line in day_lines)
            )
            row.total_amount += amount
            row.paid_amount += paid
            row.unpaid_amount += amount - paid
            day_totals[day] += amount
        rows.append(row)

    rows.sort(key=lambda r: (r.user_name.lower(), r.user_id))
    return WeeklyRollup(
        weekdays=list(weekdays),
        rows=rows,
        day_totals=day_totals,
        grand_total=sum(day_totals.values()),
    )


def daily_stats(lines: List[OrderLine], day: date) -> DailyStats:
    day_lines = [line for line in lines if line.date == day]
    top = group_by_menu_item(day_lines)[:3]
    return DailyStats(
        date=day,
        total_orders=len(day_lines),
        total_items=sum(line.quantity for line in day_lines),
        total_amount=sum(line.amount for line in day_lines),
        paid_amount=sum(line.amount for line in day_lines if line.is_paid),
        unique_users=len({line.user_id for line in day_lines}),
        top_items=[TopItem(name=s.menu_item_name, quantity=s.total_quantity) for s in top],
    )


def unpaid_by_day(lines: List[OrderLine]) -> List[UnpaidDay]:
    """Unpaid lines bucketed per day, most recent day first."""
    days: Dict[date, List[OrderLine]] = defaultdict(list)
    for line in lines:
        if not line.is_paid:
            days[line.date].append(line)
    return [
        UnpaidDay(date=day, lines=day_lines, total_amount=sum(line.amount for line in day_lines))
        for day, day_lines in sorted(days.items(), reverse=True)
    ]
