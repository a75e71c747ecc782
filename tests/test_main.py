import httpx
import pytest
from fastapi.testclient import TestClient

from pagegen.config import Config
from pagegen.main import app as main_app
from pagegen.main import build_state
from pagegen.models import (
    FAQItem,
    GeneratedContent,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_GENERATING_TITLE,
)

KEY_1 = "AIzaSy" + "a" * 30
KEY_2 = "AIzaSy" + "b" * 30

STATE_NAMES = (
    "config",
    "key_pool",
    "rate_limiter",
    "call_serializer",
    "orchestrator",
    "generator",
    "publisher",
    "history_store",
    "task_store",
)

GENERATE_BODY = {
    "keyword": "luxury phones",
    "title_type": "review",
    "wordpress": {
        "url": "https://example.com",
        "username": "editor",
        "app_password": "abcd efgh",
    },
}


class FakeGenerator:
    async def generate_page_title(self, keyword, title_type=None, on_status=None):
        return "Luxury Phones Review"

    async def generate_page_content(self, keyword, page_title, title_type=None, user_prompt=None, on_status=None):
        return GeneratedContent(
            article_html="<h2>Verdict</h2>",
            faq_items=[FAQItem(question="Worth it?", answer="Yes.")],
        )


class FakePublisher:
    async def fetch_related_products(self, site, keyword, limit=8):
        return []

    async def publish_page(self, site, title, html_content, slug, status="publish"):
        return f"{site.url}/{slug}/"


@pytest.fixture
def app(tmp_path):
    config = Config(api_keys=[KEY_1, KEY_2], history_file=str(tmp_path / "history.json"))
    build_state(main_app, config, httpx.AsyncClient(), httpx.AsyncClient())
    main_app.state.generator = FakeGenerator()
    main_app.state.publisher = FakePublisher()

    yield main_app

    for name in STATE_NAMES:
        if hasattr(main_app.state, name):
            delattr(main_app.state, name)


def test_root(app):
    client = TestClient(app)
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "running"
    assert data["total_keys"] == 2


def test_health_check(app):
    client = TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["keys_available"] == 2
    assert data["queued_requests"] == 0


def test_health_check_degraded_without_available_keys(app):
    app.state.key_pool.mark_permanently_failed(KEY_1, "leaked")
    app.state.key_pool.mark_failed(KEY_2)

    data = TestClient(app).get("/health").json()

    assert data["status"] == "degraded"
    assert data["keys_available"] == 0


def test_generate_page_runs_task_to_completion(app):
    client = TestClient(app)

    response = client.post("/api/generate-page", json=GENERATE_BODY)

    assert response.status_code == 202
    task_id = response.json()["task_id"]

    task = client.get(f"/api/tasks/{task_id}").json()
    assert task["status"] == TASK_COMPLETED
    assert task["page_url"] == "https://example.com/luxury-phones-review/"
    assert "abcd efgh" not in str(task)

    history = client.get("/api/history").json()
    assert history["total"] == 1
    assert history["records"][0]["id"] == task_id


@pytest.mark.parametrize(
    "body, detail",
    [
        ({"wordpress": GENERATE_BODY["wordpress"]}, "keyword"),
        ({"keyword": "phones"}, "wordpress"),
    ],
)
def test_generate_page_rejects_invalid_body(app, body, detail):
    response = TestClient(app).post("/api/generate-page", json=body)

    assert response.status_code == 400
    assert detail in response.json()["detail"]


def test_generate_page_rejects_non_json(app):
    response = TestClient(app).post(
        "/api/generate-page", content=b"keyword=phones", headers={"content-type": "text/plain"}
    )
    assert response.status_code == 400


def test_get_unknown_task(app):
    response = TestClient(app).get("/api/tasks/missing")
    assert response.status_code == 404


def test_pause_and_resume_task(app):
    task_store = app.state.task_store
    task = task_store.create("Task queued")
    task_store.update(task.id, TASK_GENERATING_TITLE, "Generating title")
    client = TestClient(app)

    response = client.post(f"/api/tasks/{task.id}/pause")
    assert response.status_code == 200
    assert response.json()["task"]["status"] == "paused"
    assert client.post(f"/api/tasks/{task.id}/pause").status_code == 409

    response = client.post(f"/api/tasks/{task.id}/resume")
    assert response.status_code == 200
    assert response.json()["task"]["status"] == TASK_GENERATING_TITLE
    assert client.post(f"/api/tasks/{task.id}/resume").status_code == 409
    assert client.post("/api/tasks/missing/resume").status_code == 404


def test_history_filters_and_deletes(app):
    task_store = app.state.task_store
    done = task_store.create("queued", keyword="luxury phones")
    failed = task_store.create("queued", keyword="watches")
    task_store.set_completed(done.id, "Page published", "https://example.com/a/")
    task_store.set_error(failed.id, "boom")
    client = TestClient(app)

    assert client.get("/api/history", params={"status": TASK_FAILED}).json()["total"] == 1
    assert client.get("/api/history", params={"keyword": "phones"}).json()["records"][0]["id"] == done.id
    assert client.get("/api/history", params={"limit": 1}).json()["total"] == 1
    assert client.get("/api/history", params={"status": "queued"}).status_code == 400

    assert client.delete(f"/api/history/{done.id}").status_code == 200
    assert client.delete(f"/api/history/{done.id}").status_code == 404

    response = client.delete("/api/history")
    assert response.json()["count"] == 1
    assert client.get("/api/history").json()["total"] == 0


def test_lifespan_builds_state_from_environment(monkeypatch, tmp_path):
    monkeypatch.setattr("pagegen.main.load_config", lambda: Config(
        api_keys=[KEY_1],
        priority_key=KEY_2,
        history_file=str(tmp_path / "history.json"),
    ))

    with TestClient(main_app) as client:
        data = client.get("/api/api-keys/status").json()
        assert data["total_keys"] == 2
        assert data["keys"][0]["is_priority"] is True

    for name in STATE_NAMES:
        if hasattr(main_app.state, name):
            delattr(main_app.state, name)
