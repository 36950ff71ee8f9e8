"""Automatic roster generation.

``ScheduleGenerator`` walks the working days of a month shift by shift and
role by role, asks a ``Strategy`` to rank the eligible staff and books the
top candidates.  Every booking is committed and fed back into the roster
state before the next slot, so running totals and overlap checks always
reflect what has already been assigned in the run.

Two strategies share that loop:

* ``GreedyStrategy`` books whoever has the fewest shifts this month.
* ``OptimizerStrategy`` first solves the whole month as a CP-SAT model and
  books the solver's picks, falling back to the greedy order for any gap.

After the loop a rebalancing pass hands this run's assignments from the
busiest to the least busy member of a role until the spreads allowed by the
``max_shift_type_difference`` and ``max_total_work_hours_difference``
priorities hold, higher ranked priority first.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app
from ortools.sat.python import cp_model
from sqlalchemy.exc import SQLAlchemyError

from .availability import AvailabilityResolver, RosterState
from .errors import (AlreadyScheduledError, GenerationTimeoutError, NotFoundError, PersistenceError,
                     ValidationError)
from .locks import generation_locks, roster_lock
from .models import (ROLES, STATUS_ACTIVE, Department, ScheduleAssignment, Shift, Staff, db)
from .priorities import (MAX_CONSECUTIVE_NIGHT_SHIFTS, MAX_CONSECUTIVE_SHIFTS,
                         MAX_SHIFT_TYPE_DIFFERENCE, MAX_TOTAL_WORK_HOURS_DIFFERENCE,
                         PriorityRegistry, PriorityRules)
from .timewindows import is_night_shift, parse_date, window_for, windows_overlap
from .workdays import month_key, parse_month

logger = logging.getLogger(__name__)

DEFAULT_GENERATION_TIMEOUT = 120
DEFAULT_OPTIMIZER_SECONDS = 10
MAX_REBALANCE_MOVES = 500


class GenerationContext:
    """Everything a strategy needs to know about the run in progress."""

    def __init__(self, department_id: int, first: date, last: date, dates: List[date],
                 shifts: List[Shift], staff_by_role: Dict[str, List[Staff]],
                 resolver: AvailabilityResolver, deadline: float, clock=time.monotonic):
        self.department_id = department_id
        self.first = first
        self.last = last
        self.dates = dates
        self.shifts = shifts
        self.staff_by_role = staff_by_role
        self.resolver = resolver
        self.deadline = deadline
        self.clock = clock

    @property
    def rules(self) -> PriorityRules:
        return self.resolver.rules

    @property
    def state(self) -> RosterState:
        return self.resolver.state

    def month_count(self, staff_id: int) -> int:
        return self.state.shift_count(staff_id, self.first, self.last)

    def night_count(self, staff_id: int) -> int:
        return self.state.shift_count(staff_id, self.first, self.last, night_only=True)

    def remaining_seconds(self) -> float:
        return self.deadline - self.clock()

    def expired(self) -> bool:
        return self.clock() > self.deadline


class Strategy:
    """Ranks the eligible candidates of one slot.  Subclasses override ``rank``."""

    name = 'base'
    source = 'auto'

    def prepare(self, context: GenerationContext) -> None:
        pass

    def rank(self, candidates: List[Staff], day: date, shift: Shift, role: str,
             context: GenerationContext) -> List[Staff]:
        raise NotImplementedError


class GreedyStrategy(Strategy):
    name = 'greedy'
    source = 'auto'

    def rank(self, candidates, day, shift, role, context):
        return sorted(candidates, key=lambda staff: self.fairness_key(staff, context))

    def fairness_key(self, staff: Staff, context: GenerationContext):
        count = context.month_count(staff.id)
        # Night balancing only breaks ties when per-type balancing outranks total-hours balancing.
        if context.rules.outranks(MAX_SHIFT_TYPE_DIFFERENCE, MAX_TOTAL_WORK_HOURS_DIFFERENCE):
            return (count, context.night_count(staff.id), staff.id)
        return (count, staff.id)


class OptimizerStrategy(GreedyStrategy):
    """CP-SAT plan for the whole window, booked slot by slot.

    The model only proposes; each booking still goes through the resolver,
    so the hard rules hold even when the plan is partial or stale.
    """

    name = 'optimizer'
    source = 'optimizer'

    # Filling a slot must always beat evening out the counts.
    COVERAGE_WEIGHT = 10

    def __init__(self, max_seconds: Optional[float] = None, workers: int = 8):
        self.max_seconds = max_seconds
        self.workers = workers
        self.plan = set()

    def prepare(self, context):
        self.plan = set()
        max_seconds = self.max_seconds
        if max_seconds is None:
            max_seconds = current_app.config.get('OPTIMIZER_MAX_SECONDS', DEFAULT_OPTIMIZER_SECONDS)
        time_limit = min(float(max_seconds), context.remaining_seconds())
        if time_limit <= 0:
            logger.warning("No time left for the optimizer, using greedy ranking")
            return

        model = cp_model.CpModel()
        x = self._create_variables(model, context)
        if not x:
            logger.info("Optimizer found no eligible staff/day/shift combination")
            return

        self._add_headcount(model, x, context)
        self._add_no_overlap(model, x, context)
        for setting_type, night_only in ((MAX_CONSECUTIVE_SHIFTS, False), (MAX_CONSECUTIVE_NIGHT_SHIFTS, True)):
            limit = context.rules.setting(setting_type)
            if limit is not None:
                self._add_consecutive_limit(model, x, context, limit, night_only)
        spreads = self._add_fairness_spreads(model, x, context)

        model.Maximize(self.COVERAGE_WEIGHT * sum(x.values()) - sum(spreads))

        solver = cp_model.CpSolver()
        solver.parameters.max_time_in_seconds = time_limit
        solver.parameters.num_workers = self.workers

        status = solver.Solve(model)
        if status not in (cp_model.OPTIMAL, cp_model.FEASIBLE):
            logger.warning(f"Optimizer returned {solver.StatusName(status)}, using greedy ranking")
            return

        self.plan = {key for key, var in x.items() if solver.BooleanValue(var)}
        logger.info(f"Optimizer planned {len(self.plan)} assignments "
                    f"({solver.StatusName(status)}, objective {solver.ObjectiveValue()})")

    def rank(self, candidates, day, shift, role, context):
        ordered = super().rank(candidates, day, shift, role, context)
        planned = [s for s in ordered if (s.id, day, shift.id) in self.plan]
        return planned + [s for s in ordered if (s.id, day, shift.id) not in self.plan]

    def _create_variables(self, model, context):
        x = {}
        for day in context.dates:
            for shift in context.shifts:
                for role in ROLES:
                    if shift.required_for(role) <= 0:
                        continue
                    for staff in context.staff_by_role[role]:
                        if context.resolver.is_eligible(staff, day, shift).eligible:
                            x[staff.id, day, shift.id] = model.NewBoolVar(
                                f"x_{staff.id}_{day:%Y%m%d}_{shift.id}")
        return x

    def _add_headcount(self, model, x, context):
        for day in context.dates:
            for shift in context.shifts:
                for role in ROLES:
                    terms = [x[s.id, day, shift.id] for s in context.staff_by_role[role]
                             if (s.id, day, shift.id) in x]
                    if terms:
                        model.Add(sum(terms) <= shift.required_for(role))

    def _add_no_overlap(self, model, x, context):
        shifts = {shift.id: shift for shift in context.shifts}
        by_staff_day = defaultdict(list)
        for (staff_id, day, shift_id), var in x.items():
            by_staff_day[staff_id, day].append((window_for(shifts[shift_id], day), var))

        for (staff_id, day), entries in by_staff_day.items():
            following = by_staff_day.get((staff_id, day + timedelta(days=1)), [])
            for i, (window, var) in enumerate(entries):
                for other_window, other_var in entries[i + 1:] + following:
                    if windows_overlap(window, other_window):
                        model.Add(var + other_var <= 1)

    def _add_consecutive_limit(self, model, x, context, limit, night_only):
        """No ``limit + 1`` consecutive worked days, counting bookings already in place."""
        shifts = {shift.id: shift for shift in context.shifts}
        day_vars = defaultdict(list)
        for (staff_id, day, shift_id), var in x.items():
            if night_only and not is_night_shift(shifts[shift_id]):
                continue
            day_vars[staff_id, day].append(var)

        span_start = context.dates[0] - timedelta(days=limit)
        span = (context.dates[-1] - span_start).days + limit + 1
        tag = 'night' if night_only else 'any'
        for staff_id in {staff_id for staff_id, _ in day_vars}:
            booked = context.state.worked_days(staff_id, night_only=night_only)
            worked = []
            for offset in range(span):
                day = span_start + timedelta(days=offset)
                if day in booked:
                    worked.append(1)
                elif (staff_id, day) in day_vars:
                    flag = model.NewBoolVar(f"worked_{tag}_{staff_id}_{day:%Y%m%d}")
                    model.AddMaxEquality(flag, day_vars[staff_id, day])
                    worked.append(flag)
                else:
                    worked.append(0)
            for i in range(len(worked) - limit):
                block = worked[i:i + limit + 1]
                if any(not isinstance(item, int) for item in block):
                    model.Add(sum(block) <= limit)

    def _add_fairness_spreads(self, model, x, context):
        shifts = {shift.id: shift for shift in context.shifts}
        per_staff = defaultdict(list)
        per_staff_night = defaultdict(list)
        for (staff_id, day, shift_id), var in x.items():
            per_staff[staff_id].append(var)
            if is_night_shift(shifts[shift_id]):
                per_staff_night[staff_id].append(var)

        spreads = []
        planned_per_staff = len(context.dates) * max(len(context.shifts), 1)
        for role in ROLES:
            members = [s.id for s in context.staff_by_role[role] if s.id in per_staff]
            if len(members) < 2:
                continue
            for tag, terms, base in (('count', per_staff, context.month_count),
                                     ('night', per_staff_night, context.night_count)):
                booked = {staff_id: base(staff_id) for staff_id in members}
                # Bookings already in the month count too, so the bound grows with them.
                horizon = max(booked.values()) + planned_per_staff
                totals = []
                for staff_id in members:
                    total = model.NewIntVar(0, horizon, f"{tag}_{staff_id}")
                    model.Add(total == booked[staff_id] + sum(terms.get(staff_id, [])))
                    totals.append(total)
                high = model.NewIntVar(0, horizon, f"{tag}_max_{role}")
                low = model.NewIntVar(0, horizon, f"{tag}_min_{role}")
                model.AddMaxEquality(high, totals)
                model.AddMinEquality(low, totals)
                spreads.append(high - low)
        return spreads


STRATEGIES = {
    GreedyStrategy.name: GreedyStrategy,
    OptimizerStrategy.name: OptimizerStrategy,
}


class BalanceTarget:
    """A per-role spread limit enforced by the rebalancing pass.

    Parameters
    ----------
    limit : int
        Largest allowed difference between the highest and lowest ``value``
        within a role.
    value : callable
        ``value(staff_id)`` from the roster state.
    amount : callable
        ``amount(booking)``: how much moving that booking shifts ``value``.
        Zero for bookings the target does not count.
    """

    def __init__(self, setting_type: str, label: str, limit: int, value, amount):
        self.setting_type = setting_type
        self.label = label
        self.limit = limit
        self.value = value
        self.amount = amount

    def spread(self, members: List[int], moved=None) -> int:
        values = {staff_id: self.value(staff_id) for staff_id in members}
        if moved is not None:
            booking, source, target = moved
            values[source] -= self.amount(booking)
            values[target] += self.amount(booking)
        return max(values.values()) - min(values.values())


def balance_targets(context: 'GenerationContext') -> List[BalanceTarget]:
    """Targets of the active balancing priorities, highest ranked first."""
    rules, state = context.rules, context.state
    first, last = context.first, context.last
    targets = []

    type_limit = rules.setting(MAX_SHIFT_TYPE_DIFFERENCE)
    if type_limit is not None:
        for shift in context.shifts:
            targets.append(BalanceTarget(
                MAX_SHIFT_TYPE_DIFFERENCE,
                f"{shift.name} count",
                type_limit,
                lambda staff_id, shift_id=shift.id: state.shift_count(staff_id, first, last, shift_id=shift_id),
                lambda booking, shift_id=shift.id: 1 if booking.shift_id == shift_id else 0,
            ))

    hours_limit = rules.setting(MAX_TOTAL_WORK_HOURS_DIFFERENCE)
    if hours_limit is not None:
        targets.append(BalanceTarget(
            MAX_TOTAL_WORK_HOURS_DIFFERENCE,
            'work minutes',
            hours_limit * 60,
            lambda staff_id: state.work_minutes(staff_id, first, last),
            lambda booking: booking.minutes,
        ))

    targets.sort(key=lambda target: rules.rank(target.setting_type))
    return targets


class GenerationResult:
    def __init__(self, month: str, strategy: str, start: date, end: date):
        self.month = month
        self.strategy = strategy
        self.start = start
        self.end = end
        self.inserted = 0
        self.cancelled = 0
        self.rebalanced = 0
        self.shortfalls: List[Dict[str, Any]] = []
        self.assignment_ids: List[int] = []

    def to_dict(self) -> Dict[str, Any]:
        return {
            'inserted': self.inserted,
            'cancelled': self.cancelled,
            'rebalanced': self.rebalanced,
            'shortfalls': self.shortfalls,
            'strategy': self.strategy,
            'month': self.month,
            'startDate': self.start.isoformat(),
            'endDate': self.end.isoformat(),
        }


class ScheduleGenerator:
    """Fill a department's month with assignments using a ranking strategy.

    Parameters
    ----------
    strategy : Strategy, optional
        Candidate ranking; ``GreedyStrategy`` when omitted.
    timeout : float, optional
        Seconds a run may take.  Defaults to the app's
        ``GENERATION_TIMEOUT_SECONDS``.
    """

    def __init__(self, strategy: Optional[Strategy] = None, registry: Optional[PriorityRegistry] = None,
                 timeout: Optional[float] = None, clock=time.monotonic):
        self.strategy = strategy or GreedyStrategy()
        self.registry = registry or PriorityRegistry()
        self.timeout = timeout
        self.clock = clock

    def generate(self, department_id: int, month: str, actor: Optional[str] = None, replace: bool = False,
                 start_date=None, end_date=None) -> GenerationResult:
        first, last = parse_month(month)
        start = parse_date(start_date) if start_date else first
        end = parse_date(end_date) if end_date else last
        if not (first <= start <= end <= last):
            raise ValidationError('ช่วงวันที่ต้องอยู่ภายในเดือนที่เลือก',
                                  detail=f'window {start}..{end} outside month {month}')
        if db.session.get(Department, department_id) is None:
            raise NotFoundError('ไม่พบแผนกที่ระบุ', detail=f'department {department_id} not found')

        department_id = int(department_id)
        with generation_locks.hold((department_id, month_key(first)), blocking=False):
            with roster_lock(department_id):
                return self._run(department_id, first, last, start, end, actor, replace)

    def _run(self, department_id, first, last, start, end, actor, replace):
        result = GenerationResult(month_key(first), self.strategy.name, start, end)
        logger.info(f"Starting {self.strategy.name} generation for department {department_id} "
                    f"{start}..{end} (actor={actor}, replace={replace})")

        existing = (ScheduleAssignment.query
                    .filter(ScheduleAssignment.department_id == department_id,
                            ScheduleAssignment.status == STATUS_ACTIVE,
                            ScheduleAssignment.schedule_date >= start,
                            ScheduleAssignment.schedule_date <= end)
                    .all())
        if existing:
            if not replace:
                raise AlreadyScheduledError(
                    detail=f'{len(existing)} active assignments in {start}..{end}',
                    data={'existing': len(existing)},
                )
            result.cancelled = self._cancel(existing)

        timeout = self.timeout
        if timeout is None:
            timeout = current_app.config.get('GENERATION_TIMEOUT_SECONDS', DEFAULT_GENERATION_TIMEOUT)
        deadline = self.clock() + float(timeout)

        resolver = AvailabilityResolver(self.registry.rules(department_id),
                                        RosterState.load(department_id, first, last))
        shifts = (Shift.query
                  .filter_by(department_id=department_id, is_active=True)
                  .order_by(Shift.start_time, Shift.id)
                  .all())
        staff_by_role = {role: [] for role in ROLES}
        for staff in Staff.query.filter_by(department_id=department_id, is_active=True).order_by(Staff.id):
            staff_by_role[staff.role].append(staff)
        dates = resolver.state.calendar.working_dates(start, end)

        context = GenerationContext(department_id, first, last, dates, shifts, staff_by_role,
                                    resolver, deadline, self.clock)
        if dates and shifts:
            self.strategy.prepare(context)

        for day in dates:
            for shift in shifts:
                for role in ROLES:
                    required = shift.required_for(role)
                    if required <= 0:
                        continue
                    if context.expired():
                        logger.error(f"Generation for department {department_id} timed out at {day} "
                                     f"after {result.inserted} assignments")
                        raise GenerationTimeoutError(inserted=result.inserted,
                                                     detail=f'timed out at {day} shift {shift.id}')
                    self._fill_slot(context, result, day, shift, role, required, actor)

        self._rebalance(context, result)

        logger.info(f"Generated {result.inserted} assignments for department {department_id} "
                    f"{start}..{end} with {len(result.shortfalls)} under-staffed slots "
                    f"and {result.rebalanced} moved to balance")
        return result

    def _fill_slot(self, context, result, day, shift, role, required, actor):
        resolver = context.resolver
        pool = [s for s in context.staff_by_role[role] if resolver.is_eligible(s, day, shift).eligible]
        assigned = 0
        for staff in self.strategy.rank(pool, day, shift, role, context)[:required]:
            assignment = ScheduleAssignment(
                department_id=context.department_id,
                staff_id=staff.id,
                shift_id=shift.id,
                schedule_date=day,
                department_role=role,
                status=STATUS_ACTIVE,
                source=self.strategy.source,
                created_by=actor,
            )
            try:
                db.session.add(assignment)
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f"Error saving assignment for staff {staff.id} on {day} shift {shift.id}: {str(e)}")
                raise PersistenceError(inserted=result.inserted, detail=str(e)) from e
            resolver.record(assignment, shift)
            result.inserted += 1
            result.assignment_ids.append(assignment.id)
            assigned += 1

        if assigned < required:
            logger.warning(f"Shift {shift.name} on {day} has {assigned}/{required} {role}s")
            result.shortfalls.append({
                'date': day.isoformat(),
                'shiftId': shift.id,
                'shiftName': shift.name,
                'role': role,
                'required': required,
                'assigned': assigned,
            })

    def _rebalance(self, context, result):
        shifts = {shift.id: shift for shift in context.shifts}
        targets = balance_targets(context)
        for index, balance in enumerate(targets):
            # A lower ranked target may not undo what a higher ranked one achieved.
            guards = targets[:index]
            for role in ROLES:
                members = [s.id for s in context.staff_by_role[role]]
                if len(members) < 2:
                    continue
                for _ in range(MAX_REBALANCE_MOVES):
                    if context.expired():
                        logger.warning(f"Rebalancing for department {context.department_id} stopped: out of time")
                        return
                    if not self._move_one(context, result, shifts, balance, guards, role, members):
                        break
                spread = balance.spread(members)
                if spread > balance.limit:
                    logger.warning(f"{role} {balance.label} spread is {spread}, above the allowed {balance.limit}")

    def _move_one(self, context, result, shifts, balance, guards, role, members):
        """Hand one assignment of this run from a busier to a less busy member.

        Returns False when no move narrows a gap that is over the limit.
        """
        values = {staff_id: balance.value(staff_id) for staff_id in members}
        busiest = sorted(members, key=lambda staff_id: (-values[staff_id], staff_id))
        idlest = sorted(members, key=lambda staff_id: (values[staff_id], staff_id))
        if values[busiest[0]] - values[idlest[0]] <= balance.limit:
            return False

        staff_by_id = {s.id: s for s in context.staff_by_role[role]}
        run_ids = set(result.assignment_ids)
        for giver in busiest:
            for receiver in idlest:
                gap = values[giver] - values[receiver]
                if gap <= balance.limit:
                    break
                for booking in context.state.bookings(giver):
                    if booking.assignment_id not in run_ids:
                        continue
                    amount = balance.amount(booking)
                    if not 0 < amount < gap:
                        continue
                    moved = (booking, giver, receiver)
                    if any(guard.spread(members, moved) > max(guard.limit, guard.spread(members))
                           for guard in guards):
                        continue
                    shift = shifts[booking.shift_id]
                    if not context.resolver.is_eligible(staff_by_id[receiver], booking.day, shift).eligible:
                        continue
                    self._reassign(context, result, booking, shift, receiver)
                    return True
        return False

    def _reassign(self, context, result, booking, shift, receiver):
        assignment = db.session.get(ScheduleAssignment, booking.assignment_id)
        giver = assignment.staff_id
        context.resolver.forget(assignment)
        assignment.staff_id = receiver
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error moving assignment {booking.assignment_id} to staff {receiver}: {str(e)}")
            raise PersistenceError(inserted=result.inserted, detail=str(e)) from e
        context.resolver.record(assignment, shift)
        result.rebalanced += 1
        logger.debug(f"Moved assignment {booking.assignment_id} on {booking.day} from staff {giver} to {receiver}")

    def _cancel(self, assignments: List[ScheduleAssignment]) -> int:
        try:
            for assignment in assignments:
                assignment.cancel()
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error clearing existing assignments: {str(e)}")
            raise PersistenceError(detail=str(e)) from e
        logger.info(f"Cancelled {len(assignments)} existing assignments before regenerating")
        return len(assignments)


def make_generator(strategy_name: str = GreedyStrategy.name, **kwargs) -> ScheduleGenerator:
    try:
        strategy_cls = STRATEGIES[strategy_name]
    except KeyError:
        raise ValidationError(detail=f'unknown strategy {strategy_name!r}') from None
    return ScheduleGenerator(strategy_cls(), **kwargs)
