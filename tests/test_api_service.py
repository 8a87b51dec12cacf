from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

import api_service
from app_context import AppContext
from getprospect_client import NO_EMAIL_FOUND
from models import FindEmailResult, LinkedInLookupResult, VerifyEmailResult
from sync_service import WebhookClient


SYNC_REPLY = b'[{"Prospect Name": "Ann", "Status": "completed"}]'


class StubGetProspect:
    def __init__(self):
        self.emails = {"Ann": "ann@a.co"}

    async def find_email(self, name, company):
        if name in self.emails:
            return FindEmailResult(success=True, email=self.emails[name])
        return FindEmailResult(success=False, message=NO_EMAIL_FOUND)

    async def verify_email(self, email):
        return VerifyEmailResult(success=True, status="deliverable", raw_data={"email": email})

    async def close(self):
        pass


class StubPerplexity:
    async def find_linkedin_url(self, name, company):
        return LinkedInLookupResult(success=False, message="No LinkedIn profile found")

    async def suggest_mappings(self, headers):
        return None

    async def close(self):
        pass


@pytest.fixture
def context(settings, db_client):
    webhook = WebhookClient(settings, transport=httpx.MockTransport(
        lambda r: httpx.Response(200, content=SYNC_REPLY, headers={"content-type": "application/json"})
    ))
    ctx = AppContext(
        settings,
        db_client=db_client,
        getprospect_client=StubGetProspect(),
        perplexity_client=StubPerplexity(),
        webhook_client=webhook,
    )
    api_service.app.state.context = ctx
    yield ctx
    api_service.app.state.context = None


@pytest.fixture
def client(context):
    return TestClient(api_service.app)


CSV = b"Name,Company,Notes\nAnn,A Co,x\nBob,B Co,y\n"


def test_ping_and_health(client):
    assert client.get("/ping").json()["ping"] == "pong"
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["signed_in"] is False


def test_upload_process_export_flow(client):
    upload = client.post("/upload", files={"file": ("leads.csv", CSV, "text/csv")})
    assert upload.status_code == 200
    body = upload.json()
    assert body["total_rows"] == 2
    assert body["mapping"]["name_header"] == "Name"
    assert body["mapping"]["company_header"] == "Company"

    processed = client.post("/process")
    assert processed.status_code == 200
    assert [r["status"] for r in processed.json()["rows"]] == ["completed", "not_found"]

    history = client.get("/history").json()
    assert len(history) == 1
    assert history[0]["input"] == "leads.csv"
    assert history[0]["result"] == "2 Records processed"

    stats = {s["name"]: s["value"] for s in client.get("/stats").json()}
    assert stats == {"Email Found": 1, "Not Found": 1}

    exported = client.get("/export/json").json()
    assert exported[0]["Enriched Email"] == "ann@a.co"
    assert exported[1]["Enriched Email"] == "N/A"
    assert exported[0]["Notes"] == "x"

    xlsx = client.get("/export/xlsx")
    assert xlsx.status_code == 200
    assert xlsx.content[:2] == b"PK"


def test_retry_only_reprocesses_unresolved_rows(client, context):
    client.post("/upload", files={"file": ("leads.csv", CSV, "text/csv")})
    client.post("/process")

    context.getprospect_client.emails["Bob"] = "bob@b.co"
    retried = client.post("/retry").json()

    assert retried["retried"] == [1]
    assert [r["status"] for r in retried["rows"]] == ["completed", "completed"]
    assert client.get("/history").json()[0]["input"] == "Retry: leads.csv"


def test_remap_updates_rows(client):
    client.post("/upload", files={"file": ("leads.csv", CSV, "text/csv")})
    rows = client.put("/mapping", json={"name_header": "Notes", "company_header": "Company", "email_header": ""}).json()
    assert [r["name"] for r in rows] == ["x", "y"]

    bad = client.put("/mapping", json={"name_header": "Nope", "company_header": "", "email_header": ""})
    assert bad.status_code == 400


def test_empty_upload_is_rejected(client):
    response = client.post("/upload", files={"file": ("leads.csv", b"Name,Company\n", "text/csv")})
    assert response.status_code == 400
    assert "empty" in response.json()["detail"]


def test_process_without_rows(client):
    assert client.post("/process").status_code == 400


def test_single_lookup_and_validation(client):
    client.post("/mode", json={"mode": "verify"})

    assert client.post("/single", json={}).status_code == 400

    response = client.post("/single", json={"email": "a@b.com"})
    assert response.status_code == 200
    assert response.json()["row"]["status"] == "deliverable"
    assert client.get("/history?mode=verify").json()[0]["display_input"] == "a@b.com"


def test_sync_current_results(client, context):
    client.post("/upload", files={"file": ("leads.csv", CSV, "text/csv")})
    client.post("/process")

    response = client.post("/sync")

    assert response.status_code == 200
    assert response.content == SYNC_REPLY
    assert response.headers["content-disposition"] == 'attachment; filename="lead_enrichment_api_result.json"'
    assert response.headers["x-sync-items"] == "1"
    assert response.headers["x-sync-synced"] == "false"


def test_signed_in_sync_archives_and_flags_history(client, context, fake_supabase):
    client.post("/auth/signup", json={"email": "ann@a.co", "password": "pw"})
    client.post("/upload", files={"file": ("leads.csv", CSV, "text/csv")})
    history_id = client.post("/process").json()["history_id"]

    response = client.post("/sync")

    assert response.content == SYNC_REPLY
    assert response.headers["x-sync-archived"] == "1"
    assert response.headers["x-sync-synced"] == "true"
    assert fake_supabase.tables["api_sync_results"][0]["history_id"] == history_id
    assert client.get("/history").json()[0]["synced"] is True


def test_auth_flow_loads_history(client, context, fake_supabase):
    assert client.post("/auth/signin", json={"email": "ann@a.co", "password": "pw"}).status_code == 401

    signed_up = client.post("/auth/signup", json={"email": "ann@a.co", "password": "pw", "full_name": "Ann"})
    assert signed_up.status_code == 200
    user_id = signed_up.json()["user_id"]
    assert fake_supabase.tables["profiles"][0]["id"] == user_id

    client.post("/upload", files={"file": ("leads.csv", CSV, "text/csv")})
    client.post("/process")
    assert fake_supabase.tables["history"][0]["user_id"] == user_id

    client.post("/auth/signout")
    assert client.get("/history").json() == []
    assert client.get("/rows").json() == []

    client.post("/auth/signin", json={"email": "ann@a.co", "password": "pw"})
    history = client.get("/history").json()
    assert len(history) == 1

    loaded = client.post(f"/history/{history[0]['id']}/load")
    assert loaded.status_code == 200
    assert [r["name"] for r in loaded.json()["rows"]] == ["Ann", "Bob"]


def test_load_unknown_history_entry(client):
    assert client.post("/history/does-not-exist/load").status_code == 404
