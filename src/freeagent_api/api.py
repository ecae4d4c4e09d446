"""
FreeAgent API — typed accessors for the resources this client works with.

Usage::

    config = FreeAgentConfig.load()
    async with await FreeAgent.connect(config) as fa:
        for project in await fa.projects():
            slips = await fa.timeslips(project=project, from_date=date(2024, 4, 1))
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import date, datetime
from typing import Any

from freeagent_api.auth.oauth2 import OAuth2TokenManager, TokenStore, print_approval_url
from freeagent_api.client import FreeAgentClient
from freeagent_api.config import FreeAgentConfig
from freeagent_api.models import (
    Company,
    Contact,
    Invoice,
    PayrollPeriod,
    PayrollProfile,
    Payslip,
    Project,
    Resource,
    Task,
    Timeslip,
    User,
    parse_list,
    url_of,
)

logger = logging.getLogger("freeagent_api.api")

Ref = Resource | str


def _iso(value: date | datetime | str | None) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return value.isoformat()


def _params(**values: Any) -> dict[str, Any]:
    """Drop unset filters so they never reach the query string."""
    return {k: v for k, v in values.items() if v is not None}


def _timeslip_body(timeslip: Timeslip | dict[str, Any]) -> dict[str, Any]:
    if isinstance(timeslip, Timeslip):
        return timeslip.model_dump(mode="json", exclude_none=True, exclude={"url", "updated_at"})
    return timeslip


class FreeAgent:
    """High-level FreeAgent API.

    Each list accessor walks every page of the endpoint and returns the
    combined, validated result. Filters that take another resource accept
    either the model or its URL.
    """

    def __init__(self, client: FreeAgentClient) -> None:
        self.client = client

    @classmethod
    async def connect(
        cls,
        config: FreeAgentConfig | None = None,
        *,
        notify: Callable[[str], None] | None = print_approval_url,
    ) -> FreeAgent:
        """Build a client and obtain a token (reload + refresh, or authorize).

        Raises:
            ConfigurationError: If the app id or secret is unset.
        """
        config = config or FreeAgentConfig.load()
        app_id, app_secret = config.require_credentials()

        manager = OAuth2TokenManager(
            client_id=app_id,
            client_secret=app_secret,
            authorize_url=config.authorize_url,
            token_url=config.token_url,
            store=TokenStore(config.token_file, encrypt=config.encrypt_token),
            timeout=config.timeout,
        )
        try:
            await manager.ensure_token(
                port=config.callback_port,
                timeout=config.callback_timeout,
                open_browser=config.open_browser,
                notify=notify,
            )
        except BaseException:
            await manager.close()
            raise
        return cls(FreeAgentClient(config, manager))

    async def __aenter__(self) -> FreeAgent:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.close()

    # ------------------------------------------------------------------
    # Company
    # ------------------------------------------------------------------

    async def company(self) -> Company:
        page = await self.client.get("company")
        return Company.model_validate(page["company"])

    async def first_accounting_year_end(self) -> date:
        company = await self.company()
        if company.first_accounting_year_end is None:
            raise ValueError("Company has no first accounting year end")
        return company.first_accounting_year_end

    # ------------------------------------------------------------------
    # Payroll
    # ------------------------------------------------------------------

    async def periods(self, year: int) -> list[PayrollPeriod]:
        """Payroll periods of the payroll year ending in ``year``."""
        page = await self.client.get("payroll", year)
        return parse_list(PayrollPeriod, page.get("periods"))

    async def payslips(self, year: int, period: int) -> list[Payslip]:
        page = await self.client.get("payroll", year, period)
        return parse_list(Payslip, (page.get("period") or {}).get("payslips"))

    async def profiles(self, year: int) -> list[PayrollProfile]:
        page = await self.client.get("payroll_profiles", year)
        return parse_list(PayrollProfile, page.get("profiles"))

    async def profile(self, year: int, user: Ref) -> list[PayrollProfile]:
        page = await self.client.get("payroll_profiles", year, user=url_of(user))
        return parse_list(PayrollProfile, page.get("profiles"))

    # ------------------------------------------------------------------
    # Projects and tasks
    # ------------------------------------------------------------------

    async def project(self, id: int | str) -> Project:
        page = await self.client.get("projects", id)
        return Project.model_validate(page["project"])

    async def projects(self, contact: Ref | None = None, view: str | None = None) -> list[Project]:
        items = await self.client.get_all(
            "projects", key="projects", **_params(contact=url_of(contact), view=view)
        )
        return parse_list(Project, items)

    async def task(self, id: int | str) -> Task:
        page = await self.client.get("tasks", id)
        return Task.model_validate(page["task"])

    async def tasks(self, project: Ref) -> list[Task]:
        items = await self.client.get_all("tasks", key="tasks", project=url_of(project))
        return parse_list(Task, items)

    # ------------------------------------------------------------------
    # Timeslips
    # ------------------------------------------------------------------

    async def timeslips(
        self,
        user: Ref | None = None,
        project: Ref | None = None,
        task: Ref | None = None,
        from_date: date | str | None = None,
        to_date: date | str | None = None,
    ) -> list[Timeslip]:
        items = await self.client.get_all(
            "timeslips",
            key="timeslips",
            **_params(
                user=url_of(user),
                project=url_of(project),
                task=url_of(task),
                from_date=_iso(from_date),
                to_date=_iso(to_date),
            ),
        )
        return parse_list(Timeslip, items)

    async def create_timeslip(
        self,
        user: Ref,
        project: Ref,
        task: Ref,
        dated_on: date | str,
        hours: float | str,
        comment: str | None = None,
    ) -> Timeslip:
        body = _params(
            user=url_of(user),
            project=url_of(project),
            task=url_of(task),
            dated_on=_iso(dated_on),
            hours=str(hours),
            comment=comment,
        )
        data = await self.client.post("timeslips", data={"timeslip": body})
        return Timeslip.model_validate(data["timeslip"])

    async def batch_create_timeslips(
        self, timeslips: Iterable[Timeslip | dict[str, Any]]
    ) -> list[Timeslip]:
        body = [_timeslip_body(t) for t in timeslips]
        if not body:
            return []
        data = await self.client.post("timeslips", data={"timeslips": body})
        return parse_list(Timeslip, data.get("timeslips"))

    async def delete_timeslip(self, timeslip: Ref) -> None:
        url = url_of(timeslip)
        if not url:
            raise ValueError("timeslip has no url")
        await self.client.delete("timeslips", url.rstrip("/").rsplit("/", 1)[-1])

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def invoices(
        self,
        contact: Ref | None = None,
        project: Ref | None = None,
        view: str | None = None,
        updated_since: datetime | date | str | None = None,
        sort: str | None = None,
    ) -> list[Invoice]:
        items = await self.client.get_all(
            "invoices",
            key="invoices",
            **_params(
                contact=url_of(contact),
                project=url_of(project),
                view=view,
                updated_since=_iso(updated_since),
                sort=sort,
            ),
        )
        return parse_list(Invoice, items)

    async def invoice(self, id: int | str) -> Invoice:
        page = await self.client.get("invoices", id)
        return Invoice.model_validate(page["invoice"])

    # ------------------------------------------------------------------
    # Users and contacts
    # ------------------------------------------------------------------

    async def users(self) -> list[User]:
        return parse_list(User, await self.client.get_all("users", key="users"))

    async def user(self, id: int | str) -> User:
        page = await self.client.get("users", id)
        return User.model_validate(page["user"])

    async def me(self) -> User:
        return await self.user("me")

    async def contacts(
        self,
        view: str | None = None,
        updated_since: datetime | date | str | None = None,
        sort: str | None = None,
    ) -> list[Contact]:
        items = await self.client.get_all(
            "contacts",
            key="contacts",
            **_params(view=view, updated_since=_iso(updated_since), sort=sort),
        )
        return parse_list(Contact, items)

    async def contact(self, id: int | str) -> Contact:
        page = await self.client.get("contacts", id)
        return Contact.model_validate(page["contact"])
