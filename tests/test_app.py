import io
import json
import os
from collections import deque

import pytest
from groq import GroqError
from PIL import Image

import app as app_module
from conftest import make_fake_client

RECOGNITION = {
    "findings": [
        {"toothNumber": "5", "quadrant": "右上区 (A区 - UR)", "description": ""},
        {"toothNumber": "4", "quadrant": "左上区 (B区 - UL)", "description": ""},
    ],
    "combinedDescription": "ignored",
    "missingHorizontalLine": True,
    "confidence": "中",
    "reasoning": "vertical line only",
}


class QuotaError(GroqError):
    status_code = 429
    message = "Rate limit reached: tokens per day (TPD)"


@pytest.fixture
def client(monkeypatch):
    app_module.app.config.update(TESTING=True, SESSION_COOKIE_SECURE=False, SESSION_COOKIE_SAMESITE="Lax")
    monkeypatch.setattr(app_module, "GROQ_CLIENT", None)
    with app_module.app.test_client() as test_client:
        yield test_client


def _png_upload(name="chart.png"):
    buffer = io.BytesIO()
    Image.new("RGB", (40, 30), "white").save(buffer, format="PNG")
    buffer.seek(0)
    return {"image": (buffer, name, "image/png")}


def _analyze(client, monkeypatch):
    monkeypatch.setattr(app_module, "GROQ_CLIENT", make_fake_client(json.dumps(RECOGNITION, ensure_ascii=False)))
    response = client.post("/api/analyze", data=_png_upload(), content_type="multipart/form-data")
    assert response.status_code == 200
    return response.get_json()


def test_health(client):
    assert client.get("/health").get_json() == {"status": "ok", "llm": False}


def test_chart_json(client):
    response = client.post("/api/chart", json={"UR": "456", "UL": "", "LR": "6", "LL": ""})
    data = response.get_json()
    assert data["quadrants"] == {"UR": "654", "UL": "", "LR": "6", "LL": ""}
    assert data["geometry"]["rays"]["right"] == 0
    assert data["geometry"]["rays"]["left"] > 0
    assert data["description"] == "右上第一前磨牙、第二前磨牙、第一磨牙，右下第一磨牙"
    assert data["filename"].endswith(".png")


def test_chart_json_requires_body(client):
    assert client.post("/api/chart", data="nope").status_code == 400


def test_chart_cleans_manual_input(client):
    response = client.post("/api/chart", json={"UR": "abc", "UL": "4 5", "LR": "ⅱⅰ", "LL": "-"})
    assert response.get_json()["quadrants"] == {"UR": "CBA", "UL": "45", "LR": "ⅡⅠ", "LL": ""}


@pytest.mark.parametrize("route", [
    "/api/chart", "/api/chart.png", "/api/chart/save", "/api/chart/parse",
    "/api/describe", "/api/jaw", "/api/correct",
])
def test_json_routes_reject_non_object_bodies(client, route):
    assert client.post(route, json=[1, 2]).status_code == 400
    assert client.post(route, json="UR").status_code == 400


def test_chart_png(client):
    response = client.post("/api/chart.png", json={})
    assert response.status_code == 200
    assert response.mimetype == "image/png"
    assert Image.open(io.BytesIO(response.data)).size == (600, 400)


def test_chart_save_serves_saved_png(client):
    response = client.post("/api/chart/save", json={"UR": "6/", "LL": "8"})
    data = response.get_json()
    assert data["filename"] == "右上第一磨牙_左下第三磨牙.png"
    assert os.path.isfile(os.path.join(app_module.config.RESULTS_DIR, data["filename"]))

    served = client.get(data["url"])
    assert served.status_code == 200
    assert Image.open(io.BytesIO(served.data)).size == (600, 400)


def test_describe(client):
    response = client.post("/api/describe", json={"findings": [
        {"toothNumber": "1", "quadrant": "右下区 (C区 - LR)"},
        {"toothNumber": "7", "quadrant": "左上区 (B区 - UL)"},
        {"toothNumber": "6", "quadrant": "左上区 (B区 - UL)"},
    ]})
    assert response.get_json()["combinedDescription"] == "左上第一磨牙、第二磨牙，右下中切牙"
    assert client.post("/api/describe", json={}).status_code == 400


def test_parse_without_llm(client):
    response = client.post("/api/chart/parse", json={"description": "右上654"})
    assert response.status_code == 502
    assert "ERROR" in response.get_json()["error"]


def test_parse_with_llm(client, monkeypatch):
    monkeypatch.setattr(app_module, "GROQ_CLIENT", make_fake_client('{"UR": "456", "UL": "", "LR": "", "LL": "1"}'))
    response = client.post("/api/chart/parse", json={"description": "右上654，左下1"})
    assert response.get_json()["quadrants"] == {"UR": "654", "UL": "", "LR": "", "LL": "1"}
    assert client.post("/api/chart/parse", json={"description": " "}).status_code == 400


def test_analyze_requires_image(client):
    assert client.post("/api/analyze", data={}).status_code == 400


def test_analyze_rejects_non_image(client, monkeypatch):
    monkeypatch.setattr(app_module, "GROQ_CLIENT", make_fake_client("{}"))
    data = {"image": (io.BytesIO(b"not an image"), "fake.png", "image/png")}
    response = client.post("/api/analyze", data=data, content_type="multipart/form-data")
    assert response.status_code == 400


def test_analyze_and_toggle_jaw(client, monkeypatch):
    payload = _analyze(client, monkeypatch)
    assert payload["result"]["combinedDescription"] == "右上第二前磨牙，左上第一前磨牙"

    toggled = client.post("/api/jaw", json={"job_id": payload["job_id"], "is_lower": True}).get_json()
    assert toggled["result"]["combinedDescription"] == "右下第二前磨牙，左下第一前磨牙"

    listed = client.get("/api/images").get_json()["images"]
    assert listed[0]["is_lower"] is True

    untoggled = client.post("/api/jaw", json={"job_id": payload["job_id"], "is_lower": "false"}).get_json()
    assert untoggled["is_lower"] is False
    assert untoggled["result"]["combinedDescription"] == "右上第二前磨牙，左上第一前磨牙"


def test_jaw_unknown_job(client):
    assert client.post("/api/jaw", json={"job_id": "nope", "is_lower": True}).status_code == 404


def test_correct_logs_history(client, monkeypatch):
    payload = _analyze(client, monkeypatch)
    response = client.post("/api/correct", json={
        "job_id": payload["job_id"],
        "findings": [{"toothNumber": "e", "quadrant": "左下区 (D区 - LL)"}],
    })
    corrected = response.get_json()
    assert corrected["is_corrected"] is True
    assert corrected["result"]["combinedDescription"] == "左下第二乳磨牙"
    assert corrected["result"]["missingHorizontalLine"] is False

    history = client.get("/api/history").get_json()["history"]
    assert len(history) == 1
    assert history[0]["originalResult"]["combinedDescription"] == "右上第二前磨牙，左上第一前磨牙"

    exported = client.get("/api/history/export")
    assert exported.mimetype == "application/json"
    assert json.loads(exported.data)[0]["imageName"] == "chart.png"

    client.delete("/api/history")
    assert client.get("/api/history").get_json()["history"] == []


def test_export_pdf(client, monkeypatch):
    assert client.get("/api/export").status_code == 404
    _analyze(client, monkeypatch)
    response = client.get("/api/export")
    assert response.status_code == 200
    assert response.data.startswith(b"%PDF")


def test_remove_image(client, monkeypatch):
    payload = _analyze(client, monkeypatch)
    assert client.delete(f"/api/images/{payload['job_id']}").status_code == 200
    assert client.delete(f"/api/images/{payload['job_id']}").status_code == 404


def test_call_llm_rotates_exhausted_key(monkeypatch):
    exhausted = make_fake_client(QuotaError("quota"))
    fresh = make_fake_client('{"UR": "1"}')
    monkeypatch.setattr(app_module, "GROQ_API_KEYS", ["key-aaaa", "key-bbbb"])
    monkeypatch.setattr(app_module, "api_key_queue", deque(["key-aaaa", "key-bbbb"]))
    monkeypatch.setattr(app_module, "GROQ_CLIENT", exhausted)
    monkeypatch.setattr(app_module, "Groq", lambda api_key: fresh)

    quadrants, error = app_module.call_llm(app_module.utils_generation.parse_description_to_chart, "右上1")
    assert error is None
    assert quadrants["UR"] == "1"
    assert app_module.api_key_queue[0] == "key-bbbb"


def test_call_llm_reports_other_errors(monkeypatch):
    monkeypatch.setattr(app_module, "GROQ_CLIENT", make_fake_client(GroqError("boom")))
    value, error = app_module.call_llm(app_module.utils_generation.parse_description_to_chart, "x")
    assert value is None
    assert error.startswith("ERROR: An API error occurred")
