"""Tests for the typed FreeAgent accessors."""

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from freeagent_api.api import FreeAgent
from freeagent_api.auth.oauth2 import OAuth2TokenManager
from freeagent_api.client import Page
from freeagent_api.config import FreeAgentConfig
from freeagent_api.exceptions import AuthorizationError, ConfigurationError
from freeagent_api.models import Contact, Project, Task, Timeslip, User

API = "https://api.freeagent.com/v2/"


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.get = AsyncMock()
    client.get_all = AsyncMock(return_value=[])
    client.post = AsyncMock()
    client.delete = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def fa(client: MagicMock) -> FreeAgent:
    return FreeAgent(client)


USER = User(url=f"{API}users/1", first_name="Ada", last_name="Lovelace")
PROJECT = Project(url=f"{API}projects/2", name="Engine")
TASK = Task(url=f"{API}tasks/3", name="Design")
CONTACT = Contact(url=f"{API}contacts/4", organisation_name="Babbage Ltd")


class TestCompany:
    @pytest.mark.asyncio
    async def test_first_accounting_year_end(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get.return_value = Page(data={"company": {
            "url": f"{API}company",
            "name": "Analytical Engines",
            "first_accounting_year_end": "2020-03-31",
        }})
        assert await fa.first_accounting_year_end() == date(2020, 3, 31)
        client.get.assert_awaited_once_with("company")

    @pytest.mark.asyncio
    async def test_missing_year_end(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get.return_value = Page(data={"company": {"name": "New Co"}})
        with pytest.raises(ValueError):
            await fa.first_accounting_year_end()


class TestPayroll:
    @pytest.mark.asyncio
    async def test_periods(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get.return_value = Page(data={"periods": [
            {"url": f"{API}payroll/2024/0", "period": 0, "frequency": "Monthly", "dated_on": "2023-04-25"},
        ]})
        periods = await fa.periods(2024)
        client.get.assert_awaited_once_with("payroll", 2024)
        assert periods[0].period == 0
        assert periods[0].dated_on == date(2023, 4, 25)

    @pytest.mark.asyncio
    async def test_payslips(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get.return_value = Page(data={"period": {
            "period": 3,
            "payslips": [{"user": USER.url, "basic_pay": "2500.0", "tax_code": "1257L"}],
        }})
        payslips = await fa.payslips(2024, 3)
        client.get.assert_awaited_once_with("payroll", 2024, 3)
        assert payslips[0].basic_pay == 2500.0
        assert payslips[0].tax_code == "1257L"

    @pytest.mark.asyncio
    async def test_profile_filters_by_user(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get.return_value = Page(data={"profiles": [{"user": USER.url}]})
        profiles = await fa.profile(2024, USER)
        client.get.assert_awaited_once_with("payroll_profiles", 2024, user=USER.url)
        assert profiles[0].user == USER.url


class TestProjectsAndTasks:
    @pytest.mark.asyncio
    async def test_projects_without_filters(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get_all.return_value = [{"url": PROJECT.url, "name": "Engine", "status": "Active"}]
        projects = await fa.projects()
        client.get_all.assert_awaited_once_with("projects", key="projects")
        assert projects[0].id == "2"
        assert projects[0].status == "Active"

    @pytest.mark.asyncio
    async def test_projects_by_contact(self, fa: FreeAgent, client: MagicMock) -> None:
        await fa.projects(contact=CONTACT)
        client.get_all.assert_awaited_once_with("projects", key="projects", contact=CONTACT.url)

    @pytest.mark.asyncio
    async def test_tasks_by_project_url(self, fa: FreeAgent, client: MagicMock) -> None:
        await fa.tasks(PROJECT.url)
        client.get_all.assert_awaited_once_with("tasks", key="tasks", project=PROJECT.url)

    @pytest.mark.asyncio
    async def test_task(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get.return_value = Page(data={"task": {"url": TASK.url, "name": "Design", "is_billable": True}})
        task = await fa.task(3)
        client.get.assert_awaited_once_with("tasks", 3)
        assert task.is_billable is True


class TestTimeslips:
    @pytest.mark.asyncio
    async def test_filters(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get_all.return_value = [
            {"url": f"{API}timeslips/9", "hours": "1.5", "dated_on": "2024-04-02", "unknown_field": "kept"},
        ]
        slips = await fa.timeslips(user=USER, task=TASK, from_date=date(2024, 4, 1), to_date="2024-04-30")

        client.get_all.assert_awaited_once_with(
            "timeslips",
            key="timeslips",
            user=USER.url,
            task=TASK.url,
            from_date="2024-04-01",
            to_date="2024-04-30",
        )
        assert slips[0].hours == 1.5
        assert slips[0].unknown_field == "kept"  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_create_timeslip(self, fa: FreeAgent, client: MagicMock) -> None:
        client.post.return_value = {"timeslip": {"url": f"{API}timeslips/10", "hours": "2.0"}}
        slip = await fa.create_timeslip(USER, PROJECT, TASK, date(2024, 4, 3), 2)

        client.post.assert_awaited_once_with("timeslips", data={"timeslip": {
            "user": USER.url,
            "project": PROJECT.url,
            "task": TASK.url,
            "dated_on": "2024-04-03",
            "hours": "2",
        }})
        assert slip.id == "10"

    @pytest.mark.asyncio
    async def test_batch_create(self, fa: FreeAgent, client: MagicMock) -> None:
        client.post.return_value = {"timeslips": [{"url": f"{API}timeslips/11"}, {"url": f"{API}timeslips/12"}]}
        slip = Timeslip(user=USER.url, project=PROJECT.url, task=TASK.url, dated_on=date(2024, 4, 4), hours=1.0)
        created = await fa.batch_create_timeslips([slip, {"user": USER.url, "hours": "3"}])

        body = client.post.await_args.kwargs["data"]["timeslips"]
        assert body[0] == {
            "user": USER.url,
            "project": PROJECT.url,
            "task": TASK.url,
            "dated_on": "2024-04-04",
            "hours": 1.0,
        }
        assert body[1] == {"user": USER.url, "hours": "3"}
        assert [s.id for s in created] == ["11", "12"]

    @pytest.mark.asyncio
    async def test_batch_create_empty_skips_request(self, fa: FreeAgent, client: MagicMock) -> None:
        assert await fa.batch_create_timeslips([]) == []
        client.post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_timeslip_uses_trailing_id(self, fa: FreeAgent, client: MagicMock) -> None:
        await fa.delete_timeslip(Timeslip(url=f"{API}timeslips/42"))
        client.delete.assert_awaited_once_with("timeslips", "42")


class TestInvoicesUsersContacts:
    @pytest.mark.asyncio
    async def test_invoices_filters(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get_all.return_value = [{"url": f"{API}invoices/5", "total_value": "120.00", "status": "Open"}]
        invoices = await fa.invoices(
            project=PROJECT,
            view="open",
            updated_since=datetime(2024, 1, 1, 9, 30),
            sort="-updated_at",
        )
        client.get_all.assert_awaited_once_with(
            "invoices",
            key="invoices",
            project=PROJECT.url,
            view="open",
            updated_since="2024-01-01T09:30:00",
            sort="-updated_at",
        )
        assert invoices[0].total_value == 120.0

    @pytest.mark.asyncio
    async def test_users(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get_all.return_value = [{"url": USER.url, "first_name": "Ada", "last_name": "Lovelace"}]
        users = await fa.users()
        client.get_all.assert_awaited_once_with("users", key="users")
        assert users[0].full_name == "Ada Lovelace"

    @pytest.mark.asyncio
    async def test_me(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get.return_value = Page(data={"user": {"url": USER.url, "first_name": "Ada"}})
        await fa.me()
        client.get.assert_awaited_once_with("users", "me")

    @pytest.mark.asyncio
    async def test_contact(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get.return_value = Page(data={"contact": {"url": CONTACT.url, "organisation_name": "Babbage Ltd"}})
        contact = await fa.contact(4)
        client.get.assert_awaited_once_with("contacts", 4)
        assert contact.display_name == "Babbage Ltd"

    @pytest.mark.asyncio
    async def test_contacts_view(self, fa: FreeAgent, client: MagicMock) -> None:
        await fa.contacts(view="active")
        client.get_all.assert_awaited_once_with("contacts", key="contacts", view="active")


class TestConnect:
    @pytest.mark.asyncio
    async def test_requires_credentials(self, tmp_path: Path) -> None:
        config = FreeAgentConfig(app_secret="s", token_file=str(tmp_path / "t.yml"))
        with pytest.raises(ConfigurationError, match="FREEAGENT_APP_ID is unset"):
            await FreeAgent.connect(config)

    @pytest.mark.asyncio
    async def test_runs_token_startup(self, tmp_path: Path) -> None:
        config = FreeAgentConfig(
            app_id="id",
            app_secret="s",
            token_file=str(tmp_path / "t.yml"),
            open_browser=False,
        )
        with patch("freeagent_api.api.OAuth2TokenManager.ensure_token", new=AsyncMock()) as ensure:
            fa = await FreeAgent.connect(config, notify=None)

        ensure.assert_awaited_once_with(port=0, timeout=300.0, open_browser=False, notify=None)
        assert fa.client.token_manager.token_url == f"{API}token_endpoint"
        assert fa.client.token_manager.authorize_url == f"{API}approve_app"
        await fa.close()

    @pytest.mark.asyncio
    async def test_failed_startup_closes_token_client(self, tmp_path: Path) -> None:
        config = FreeAgentConfig(app_id="id", app_secret="s", token_file=str(tmp_path / "t.yml"))
        opened: list[OAuth2TokenManager] = []

        async def fail(manager: OAuth2TokenManager, **options: object) -> None:
            await manager._get_client()
            opened.append(manager)
            raise AuthorizationError("Authorization failed: access_denied")

        with patch("freeagent_api.api.OAuth2TokenManager.ensure_token", new=fail):
            with pytest.raises(AuthorizationError):
                await FreeAgent.connect(config, notify=None)

        assert opened[0]._http_client is not None
        assert opened[0]._http_client.is_closed

class TestSingleResources:
    @pytest.mark.asyncio
    async def test_invoice(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get.return_value = Page(data={"invoice": {"url": f"{API}invoices/5", "due_on": "2024-05-01"}})
        invoice = await fa.invoice(5)
        client.get.assert_awaited_once_with("invoices", 5)
        assert invoice.due_on == date(2024, 5, 1)

    @pytest.mark.asyncio
    async def test_project(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get.return_value = Page(data={"project": {"url": PROJECT.url, "name": "Engine", "budget": "10"}})
        project = await fa.project(2)
        client.get.assert_awaited_once_with("projects", 2)
        assert project.budget == 10.0

    @pytest.mark.asyncio
    async def test_profiles(self, fa: FreeAgent, client: MagicMock) -> None:
        client.get.return_value = Page(data={"profiles": [{"user": USER.url}, {"user": f"{API}users/9"}]})
        profiles = await fa.profiles(2024)
        client.get.assert_awaited_once_with("payroll_profiles", 2024)
        assert len(profiles) == 2
