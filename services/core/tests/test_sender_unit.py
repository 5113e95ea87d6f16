"""Unit tests for sender extraction."""

from abjail_core.domain.models import ProcessingStatus, RenderStatus
from abjail_core.domain.services.inference import InferenceError, MissingApiKeyError
from abjail_core.domain.services.sender import (
    SenderExtractionService,
    parse_sender_response,
)
from tests.factories import create_submission


class TestParseSenderResponse:
    def test_valid(self):
        output = parse_sender_response(
            '{"sender_name": " Jane for Congress ", "sender_type": "candidate", "confidence": 0.9}'
        )
        assert output.sender_name == "Jane for Congress"
        assert output.sender_type == "candidate"
        assert output.confidence == 0.9

    def test_fenced(self):
        output = parse_sender_response('```json\n{"sender_name": "DCCC", "sender_type": "pac"}\n```')
        assert output.sender_name == "DCCC"

    def test_loose_values(self):
        output = parse_sender_response(
            '{"sender_name": "  ", "sender_type": "party", "confidence": "high", "notes": 3}'
        )
        assert output.sender_name is None
        assert output.sender_type == "unknown"
        assert output.confidence == 0.2
        assert output.notes is None

    def test_garbage(self):
        output = parse_sender_response("no idea")
        assert output.sender_name is None
        assert output.notes == "Parse failed"


class TestSenderExtractionService:
    async def test_writes_sender_name_only(
        self, repo, db_session, mock_inference_client, chat_response
    ):
        submission = create_submission(db_session, processing_status=ProcessingStatus.CLASSIFIED)
        mock_inference_client.chat.return_value = chat_response(
            {"sender_name": "Friends of Jane", "sender_type": "candidate", "confidence": 0.8}
        )

        result = await SenderExtractionService(repo, mock_inference_client).extract_sender(
            submission.id
        )

        assert result.ok
        assert result.sender_name == "Friends of Jane"
        fresh = repo.get(submission.id)
        assert fresh.sender_name == "Friends of Jane"
        assert fresh.processing_status == ProcessingStatus.CLASSIFIED

    async def test_null_answer_keeps_previous_name(
        self, repo, db_session, mock_inference_client, chat_response
    ):
        submission = create_submission(db_session, sender_name="Earlier Name")
        mock_inference_client.chat.return_value = chat_response(
            {"sender_name": None, "sender_type": "unknown", "confidence": 0.1}
        )

        result = await SenderExtractionService(repo, mock_inference_client).extract_sender(
            submission.id
        )

        assert result.ok
        assert repo.get(submission.id).sender_name == "Earlier Name"

    async def test_forwarder_named_as_not_sender(self, repo, db_session, mock_inference_client):
        submission = create_submission(db_session, forwarder_email="fwd@example.com")

        await SenderExtractionService(repo, mock_inference_client).extract_sender(submission.id)

        messages = mock_inference_client.chat.await_args.args[0]
        texts = [part["text"] for part in messages[1].content if part["type"] == "text"]
        assert any("fwd@example.com" in t and "NOT the sender" in t for t in texts)

    async def test_image_attached(self, repo, db_session, storage, mock_inference_client):
        ref = storage.put("incoming", b"\x89PNGdata", "image/png")
        submission = create_submission(db_session, image_url=ref)

        await SenderExtractionService(repo, mock_inference_client, storage).extract_sender(
            submission.id
        )

        messages = mock_inference_client.chat.await_args.args[0]
        assert messages[1].content[-1]["type"] == "image_url"

    async def test_https_evidence_passed_through(self, repo, db_session, mock_inference_client):
        submission = create_submission(db_session, image_url="https://cdn.example.com/shot.png")

        await SenderExtractionService(repo, mock_inference_client).extract_sender(submission.id)

        messages = mock_inference_client.chat.await_args.args[0]
        urls = [p["image_url"]["url"] for p in messages[1].content if p["type"] == "image_url"]
        assert urls == ["https://cdn.example.com/shot.png"]

    async def test_landing_screenshot_attached_when_rendered(
        self, repo, db_session, storage, mock_inference_client
    ):
        evidence = storage.put("incoming", b"\x89PNGdata", "image/png")
        screenshot = storage.put("screenshots", b"\x89PNGlanding", "image/png")
        submission = create_submission(
            db_session,
            image_url=evidence,
            landing_screenshot_url=screenshot,
            landing_render_status=RenderStatus.SUCCESS,
        )

        await SenderExtractionService(repo, mock_inference_client, storage).extract_sender(
            submission.id
        )

        content = mock_inference_client.chat.await_args.args[0][1].content
        images = [p for p in content if p["type"] == "image_url"]
        assert len(images) == 2
        assert any("Landing page screenshot" in p.get("text", "") for p in content)

    async def test_pending_screenshot_skipped(
        self, repo, db_session, storage, mock_inference_client
    ):
        screenshot = storage.put("screenshots", b"\x89PNGlanding", "image/png")
        submission = create_submission(
            db_session,
            landing_screenshot_url=screenshot,
            landing_render_status=RenderStatus.PENDING,
        )

        await SenderExtractionService(repo, mock_inference_client, storage).extract_sender(
            submission.id
        )

        content = mock_inference_client.chat.await_args.args[0][1].content
        assert [p for p in content if p["type"] == "image_url"] == []

    async def test_failures_do_not_touch_status(self, repo, db_session, mock_inference_client):
        submission = create_submission(db_session, processing_status=ProcessingStatus.DONE)
        mock_inference_client.chat.side_effect = InferenceError("boom")

        result = await SenderExtractionService(repo, mock_inference_client).extract_sender(
            submission.id
        )

        assert result.error == "openai_failed"
        assert repo.current_status(submission.id) == ProcessingStatus.DONE

    async def test_missing_key(self, repo, db_session, mock_inference_client):
        submission = create_submission(db_session)
        mock_inference_client.chat.side_effect = MissingApiKeyError("No API key configured")

        result = await SenderExtractionService(repo, mock_inference_client).extract_sender(
            submission.id
        )

        assert result.error == "openai_key_missing"

    async def test_not_found(self, repo, mock_inference_client):
        result = await SenderExtractionService(repo, mock_inference_client).extract_sender("nope")
        assert result.error == "not_found"
