from __future__ import annotations

import asyncio

import pytest

from app_context import AppContext, BusyError
from auth_service import AuthError
from models import ColumnMapping, FindEmailResult, VerifyEmailResult
from sync_service import WebhookClient

CSV = b"Person,Employer,Email\nAnn,A Co,ann@a.co\n"


class SuggestingPerplexity:
    def __init__(self, mapping):
        self.mapping = mapping

    async def suggest_mappings(self, headers):
        return self.mapping

    async def close(self):
        pass


def _context(settings, db_client, suggestion=None):
    return AppContext(
        settings,
        db_client=db_client,
        perplexity_client=SuggestingPerplexity(suggestion),
        webhook_client=WebhookClient(settings),
    )


def test_import_uses_llm_suggestion(settings, db_client):
    ctx = _context(settings, db_client, ColumnMapping(name_header="person", company_header="employer"))
    mapping = asyncio.run(ctx.import_file("leads.csv", CSV))

    assert mapping == ColumnMapping(name_header="Person", company_header="Employer", email_header="Email")
    assert ctx.source_label == "leads.csv"
    assert (ctx.rows[0].name, ctx.rows[0].company, ctx.rows[0].email) == ("Ann", "A Co", "ann@a.co")


def test_import_falls_back_to_heuristic(settings, db_client):
    ctx = _context(settings, db_client, ColumnMapping(name_header="Nope", company_header="Nada"))
    mapping = asyncio.run(ctx.import_file("leads.csv", CSV))

    assert mapping.name_header == "Person"
    assert mapping.company_header == "Employer"


def test_switch_mode_clears_working_set(settings, db_client):
    ctx = _context(settings, db_client)
    asyncio.run(ctx.import_file("leads.csv", CSV))

    ctx.switch_mode("verify")

    assert ctx.mode == "verify"
    assert ctx.rows == []
    assert ctx.mapping is None
    with pytest.raises(ValueError):
        ctx.switch_mode("bogus")


def test_sign_in_failure_keeps_session_empty(settings, db_client):
    ctx = _context(settings, db_client)
    with pytest.raises(AuthError):
        asyncio.run(ctx.sign_in("nobody@a.co", "pw"))
    assert ctx.session is None


def test_export_rejects_unknown_format(settings, db_client):
    ctx = _context(settings, db_client)
    with pytest.raises(ValueError):
        ctx.export("pdf")


class BlockingGetProspect:
    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def find_email(self, name, company):
        self.started.set()
        await self.release.wait()
        return FindEmailResult(success=True, email="ann@a.co")

    async def verify_email(self, email):
        return VerifyEmailResult(success=True, status="deliverable", raw_data={})

    async def close(self):
        pass


def test_single_lookup_is_refused_while_batch_runs(settings, db_client):
    getprospect = BlockingGetProspect()
    ctx = AppContext(
        settings,
        db_client=db_client,
        getprospect_client=getprospect,
        perplexity_client=SuggestingPerplexity(None),
        webhook_client=WebhookClient(settings),
    )

    async def scenario():
        await ctx.import_file("leads.csv", CSV)
        batch = asyncio.create_task(ctx.run_batch())
        await getprospect.started.wait()

        assert ctx.is_processing is True
        with pytest.raises(BusyError):
            await ctx.run_single("Bob", "B Co")
        with pytest.raises(BusyError):
            await ctx.retry_failed()

        getprospect.release.set()
        return await batch

    entry = asyncio.run(scenario())

    assert ctx.current_history_id == entry.id
    assert ctx.single_result is None
    assert ctx.rows[0].status == "completed"
