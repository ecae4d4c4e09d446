"""
FreeAgent resource models — companies, users, contacts, projects, timeslips.

Only the commonly used attributes are typed; everything else the API sends
is kept as extra fields on the model.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class Resource(BaseModel):
    """Base for API resources, identified by their URL."""

    model_config = ConfigDict(extra="allow")

    url: str | None = None

    @property
    def id(self) -> str | None:
        """Trailing URL segment, e.g. ``"42"`` for ``.../projects/42``."""
        if not self.url:
            return None
        return self.url.rstrip("/").rsplit("/", 1)[-1]


def url_of(value: Resource | str | None) -> str | None:
    """Return the URL of a resource, passing strings and ``None`` through."""
    if value is None or isinstance(value, str):
        return value
    if not value.url:
        raise ValueError(f"{type(value).__name__} has no url")
    return value.url


class Company(Resource):
    name: str = ""
    subdomain: str | None = None
    type: str | None = None
    currency: str | None = None
    first_accounting_year_end: date | None = None
    company_start_date: date | None = None


class User(Resource):
    first_name: str = ""
    last_name: str = ""
    email: str | None = None
    role: str | None = None
    permission_level: int | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Contact(Resource):
    first_name: str | None = None
    last_name: str | None = None
    organisation_name: str | None = None
    email: str | None = None
    status: str | None = None

    @property
    def display_name(self) -> str:
        if self.organisation_name:
            return self.organisation_name
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class Project(Resource):
    name: str = ""
    contact: str | None = None
    status: str | None = None
    currency: str | None = None
    budget: float | None = None
    budget_units: str | None = None
    normal_billing_rate: float | None = None
    billing_period: str | None = None
    starts_on: date | None = None
    ends_on: date | None = None


class Task(Resource):
    project: str | None = None
    name: str = ""
    is_billable: bool | None = None
    billing_rate: float | None = None
    billing_period: str | None = None
    status: str | None = None


class Timeslip(Resource):
    user: str | None = None
    project: str | None = None
    task: str | None = None
    dated_on: date | None = None
    hours: float = 0.0
    comment: str | None = None
    updated_at: datetime | None = None


class Invoice(Resource):
    contact: str | None = None
    project: str | None = None
    reference: str | None = None
    dated_on: date | None = None
    due_on: date | None = None
    status: str | None = None
    currency: str | None = None
    net_value: float | None = None
    total_value: float | None = None
    due_value: float | None = None


class PayrollPeriod(Resource):
    period: int | None = None
    frequency: str | None = None
    dated_on: date | None = None
    status: str | None = None
    payslips: list[Payslip] = []


class Payslip(Resource):
    user: str | None = None
    tax_code: str | None = None
    dated_on: date | None = None
    basic_pay: float | None = None
    tax_deducted: float | None = None
    employee_ni: float | None = None
    employer_ni: float | None = None


class PayrollProfile(Resource):
    user: str | None = None
    total_pay_in_previous_employment: float | None = None
    total_tax_in_previous_employment: float | None = None


PayrollPeriod.model_rebuild()


def parse_list(model: type[Resource], items: list[dict[str, Any]] | None) -> list[Any]:
    """Validate a list of raw API objects into models."""
    return [model.model_validate(item) for item in items or []]
