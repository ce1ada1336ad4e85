"""
Tests for the HTTP surface: status codes, wire shapes and the
long-poll scenarios end to end through the ASGI app.
"""
import asyncio
import time
import pytest

from tests.conftest import LONG_POLL_TIMEOUT


# ══════════════════════════════════════════════════════════════
#  QUESTIONS & LONG POLL
# ══════════════════════════════════════════════════════════════

class TestQuestions:
    @pytest.mark.asyncio
    async def test_submit_then_long_poll(self, api_client):
        resp = await api_client.post("/v1/questions", json={"text": "Hi"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["question"]["id"] == 1
        assert body["question"]["text"] == "Hi"
        assert body["question"]["attachments"] == []

        resp = await api_client.get("/v1/questions/long-poll", params={"cursor": 0})
        assert resp.status_code == 200
        body = resp.json()
        assert [(q["id"], q["text"]) for q in body["items"]] == [(1, "Hi")]
        assert body["nextCursor"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{}, {"text": ""}, {"text": 42}, {"attachments": []}])
    async def test_missing_text_is_400(self, api_client, broker, payload):
        resp = await api_client.post("/v1/questions", json=payload)
        assert resp.status_code == 400
        body = resp.json()
        assert body["ok"] is False
        assert body["error"].startswith("text:")
        assert broker.stats()["questions"] == 0

    @pytest.mark.asyncio
    async def test_invalid_json_is_400(self, api_client):
        resp = await api_client.post(
            "/v1/questions", content=b"{not json", headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json()["ok"] is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"", b"[1, 2]", b"\"Hi\""])
    async def test_non_object_body_is_400(self, api_client, body):
        resp = await api_client.post(
            "/v1/questions", content=body, headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json()["ok"] is False

    @pytest.mark.asyncio
    async def test_non_list_attachments_mean_none(self, api_client):
        resp = await api_client.post("/v1/questions", json={"text": "plain", "attachments": {"url": "x"}})
        assert resp.status_code == 200
        assert resp.json()["question"]["attachments"] == []

    @pytest.mark.asyncio
    async def test_bad_attachments_do_not_fail_question(self, api_client):
        resp = await api_client.post("/v1/questions", json={
            "text": "see files",
            "attachments": [
                {"content": "data:text/plain;base64,aGVsbG8=", "filename": "hello.txt"},
                {"content": "data:garbage"},
                {"url": "https://cdn.example.com/img/cat.jpg"},
                "not-a-dict",
            ],
        })
        assert resp.status_code == 200
        atts = resp.json()["question"]["attachments"]
        assert [a["filename"] for a in atts] == ["hello.txt", "cat.jpg"]
        assert atts[0]["id"] == 1
        assert atts[0]["url"] == "/v1/attachments/1"
        assert "id" not in atts[1]

    @pytest.mark.asyncio
    async def test_long_poll_times_out_with_204(self, api_client):
        await api_client.post("/v1/questions", json={"text": "first"})
        started = time.monotonic()
        resp = await api_client.get("/v1/questions/long-poll", params={"cursor": 1})
        elapsed = time.monotonic() - started
        assert resp.status_code == 204
        assert resp.content == b""
        assert elapsed >= LONG_POLL_TIMEOUT - 0.01

    @pytest.mark.asyncio
    async def test_suspended_long_poll_receives_new_question(self, api_client, broker):
        poll = asyncio.create_task(api_client.get("/v1/questions/long-poll", params={"cursor": 0}))
        deadline = time.monotonic() + 1
        while broker.waiters.pending == 0:
            assert time.monotonic() < deadline
            await asyncio.sleep(0.005)

        await api_client.post("/v1/questions", json={"text": "late arrival"})
        resp = await poll
        assert resp.status_code == 200
        assert resp.json()["items"][0]["text"] == "late arrival"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cursor", [None, "abc", "-4"])
    async def test_missing_or_bad_cursor_means_everything(self, api_client, cursor):
        await api_client.post("/v1/questions", json={"text": "a"})
        params = {"cursor": cursor} if cursor is not None else {}
        resp = await api_client.get("/v1/questions/long-poll", params=params)
        assert resp.json()["nextCursor"] == 1


# ══════════════════════════════════════════════════════════════
#  ATTACHMENTS
# ══════════════════════════════════════════════════════════════

class TestAttachments:
    @pytest.mark.asyncio
    async def test_data_url_roundtrip(self, api_client):
        resp = await api_client.post("/v1/attachments", json={
            "content": "data:text/plain;base64,aGVsbG8=",
        })
        assert resp.status_code == 200
        att = resp.json()["attachment"]
        assert att["mime"] == "text/plain"
        assert att["size"] == 5

        resp = await api_client.get(f"/v1/attachments/{att['id']}")
        assert resp.status_code == 200
        assert resp.content == b"hello"
        assert resp.headers["content-type"].startswith("text/plain")
        assert 'filename="file"' in resp.headers["content-disposition"]

    @pytest.mark.asyncio
    async def test_missing_content_is_400(self, api_client):
        resp = await api_client.post("/v1/attachments", json={"filename": "x.txt"})
        assert resp.status_code == 400
        assert resp.json()["error"].startswith("content:")

    @pytest.mark.asyncio
    async def test_undecodable_content_is_400(self, api_client):
        resp = await api_client.post("/v1/attachments", json={"content": "data:text/plain,plain"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid content encoding"

    @pytest.mark.asyncio
    async def test_unknown_attachment_is_404(self, api_client):
        resp = await api_client.get("/v1/attachments/77")
        assert resp.status_code == 404
        assert resp.json()["ok"] is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attachment_id", ["abc", "1.5", "0x1"])
    async def test_non_numeric_attachment_id_is_404(self, api_client, attachment_id):
        await api_client.post("/v1/attachments", json={"content": "aGVsbG8="})
        resp = await api_client.get(f"/v1/attachments/{attachment_id}")
        assert resp.status_code == 404
        assert resp.json() == {"ok": False, "error": "Attachment not found"}

    @pytest.mark.asyncio
    async def test_data_url_mime_wins_over_mime_field(self, api_client):
        resp = await api_client.post("/v1/attachments", json={
            "content": "data:text/plain;base64,aGVsbG8=", "mime": "image/png", "filename": "h.txt",
        })
        att = resp.json()["attachment"]
        assert att["mime"] == "text/plain"
        resp = await api_client.get(att["url"])
        assert resp.headers["content-type"].startswith("text/plain")

    @pytest.mark.asyncio
    async def test_mime_field_applies_to_raw_base64(self, api_client):
        resp = await api_client.post("/v1/attachments", json={"content": "aGVsbG8=", "mime": "text/csv"})
        assert resp.json()["attachment"]["mime"] == "text/csv"

    @pytest.mark.asyncio
    async def test_multipart_upload(self, api_client):
        resp = await api_client.post(
            "/v1/attachments/upload",
            files={"file": ("notes.md", b"# notes", "text/markdown")},
        )
        assert resp.status_code == 200
        att = resp.json()["attachment"]
        assert att["filename"] == "notes.md"
        assert att["mime"] == "text/markdown"
        assert att["size"] == 7

        resp = await api_client.get(att["url"])
        assert resp.content == b"# notes"

    @pytest.mark.asyncio
    async def test_upload_without_file_is_400(self, api_client):
        resp = await api_client.post("/v1/attachments/upload", files={"other": ("a", b"a")})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_question_can_reference_uploaded_attachment(self, api_client, broker):
        att = (await api_client.post("/v1/attachments", json={"content": "aGVsbG8="})).json()["attachment"]
        resp = await api_client.post("/v1/questions", json={
            "text": "look", "attachments": [{"id": att["id"], "filename": "renamed.bin"}],
        })
        ref = resp.json()["question"]["attachments"][0]
        assert ref["id"] == att["id"]
        assert ref["filename"] == "renamed.bin"
        assert broker.stats()["attachments"] == 1


# ══════════════════════════════════════════════════════════════
#  ANSWERS & ADMIN
# ══════════════════════════════════════════════════════════════

class TestAnswers:
    @pytest.mark.asyncio
    async def test_submit_answer(self, api_client):
        resp = await api_client.post("/v1/answers", json={"questionId": "1", "answer": "42"})
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}

        items = (await api_client.get("/admin/answers")).json()["items"]
        assert items[0]["question_id"] == "1"
        assert items[0]["answer"] == "42"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"answer": "x"}, {"questionId": 1}, {"questionId": "", "answer": "x"}, {"questionId": 1, "answer": ""},
        {"questionId": True, "answer": "x"}, {"questionId": 1, "answer": 7},
    ])
    async def test_missing_fields_are_400(self, api_client, broker, payload):
        resp = await api_client.post("/v1/answers", json=payload)
        assert resp.status_code == 400
        assert broker.stats()["answers"] == 0


class TestAdmin:
    @pytest.mark.asyncio
    async def test_listings(self, api_client):
        await api_client.post("/v1/questions", json={"text": "q"})
        await api_client.post("/v1/attachments", json={"content": "aGVsbG8=", "filename": "h"})

        questions = (await api_client.get("/admin/questions")).json()["items"]
        attachments = (await api_client.get("/admin/attachments")).json()["items"]
        assert [q["text"] for q in questions] == ["q"]
        assert attachments[0]["filename"] == "h"
        assert "content" not in attachments[0]

    @pytest.mark.asyncio
    async def test_health(self, api_client):
        resp = await api_client.get("/health")
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["pending_waiters"] == 0
        assert body["relay_listeners"] == 0
