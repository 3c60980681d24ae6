from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

DEFAULT_LOAN_DAYS = 14
EXTENDED_LOAN_DAYS = 30
FINAL_YEAR = 4
EXTENDED_CATEGORIES = ("Reference", "Technical")


@dataclass
class ExamWindow:
    start_date: datetime
    end_date: datetime
    name: Optional[str] = None

    def covers(self, when: datetime) -> bool:
        # inclusive on calendar days
        return self.start_date.date() <= when.date() <= self.end_date.date()


def loan_days(year_of_study: Optional[int], category: Optional[str], is_core: bool) -> int:
    if year_of_study == FINAL_YEAR and (category in EXTENDED_CATEGORIES or is_core):
        return EXTENDED_LOAN_DAYS
    return DEFAULT_LOAN_DAYS


def compute_due_date(
    borrow_date: datetime,
    year_of_study: Optional[int],
    category: Optional[str],
    is_core: bool,
    exam_periods: Iterable[ExamWindow] = (),
) -> datetime:
    """
    Final-year students get 30 days on Reference/Technical/core material,
    everyone else 14. A due date landing inside an exam period moves to the
    day after that period ends; only the first matching period is applied.
    """
    due = borrow_date + timedelta(days=loan_days(year_of_study, category, is_core))
    for period in exam_periods:
        if period.covers(due):
            return period.end_date + timedelta(days=1)
    return due


class DueDatePolicy:
    """
    Single entry point for due dates. Direct self-service borrowing uses the
    flat default (advanced=False); librarian-created loans apply the year,
    category and exam-period rules.
    """

    def __init__(self, exam_periods: Iterable[ExamWindow] = ()):
        self.exam_periods = list(exam_periods)

    def due_date(
        self,
        borrow_date: datetime,
        year_of_study: Optional[int] = None,
        category: Optional[str] = None,
        is_core: bool = False,
        advanced: bool = True,
    ) -> datetime:
        if not advanced:
            return borrow_date + timedelta(days=DEFAULT_LOAN_DAYS)
        return compute_due_date(borrow_date, year_of_study, category, is_core, self.exam_periods)
