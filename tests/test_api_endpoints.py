"""Integration tests for the HTTP endpoints."""
import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock, Mock
import sys
import os

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))


@pytest.fixture
def client():
    """Create a test client with mocked services (startup is not run)."""
    import main
    from main import app

    client = TestClient(app)

    main.dispatcher = Mock()
    main.llm_client = Mock()
    main.llm_client.slots = [Mock(), Mock()]
    main.conversation_store = MagicMock()
    main.conversation_store.is_initialized = True
    main.conversation_store.is_dirty = False
    main.conversation_store.__len__.return_value = 3
    main.channel = None

    yield client

    main.dispatcher = None
    main.llm_client = None
    main.conversation_store = None


class TestMessagesEndpoint:
    """Tests for POST /messages."""

    def test_message_queued(self, client):
        import main

        response = client.post("/messages", json={
            "sender": "94771234567@c.us",
            "text": "Ado machan",
            "id": "msg-1",
            "sender_name": "Kasun",
        })

        assert response.status_code == 202
        assert response.json() == {
            "status": "queued",
            "sender": "94771234567@c.us",
            "message_id": "msg-1",
        }
        message = main.dispatcher.submit.call_args.args[0]
        assert message.sender == "94771234567@c.us"
        assert message.text == "Ado machan"
        assert message.display_name == "Kasun"

    def test_quoted_message_converted(self, client):
        import main

        client.post("/messages", json={
            "sender": "alice",
            "text": "yes",
            "id": "msg-2",
            "quoted_message": {"text": "Coming tonight?", "is_from_bot": True},
            "has_quote": True,
        })

        message = main.dispatcher.submit.call_args.args[0]
        assert message.has_quote is True
        assert message.quoted_message.text == "Coming tonight?"
        assert message.quoted_message.is_from_bot is True

    def test_missing_fields_rejected(self, client):
        response = client.post("/messages", json={"sender": "alice"})

        assert response.status_code == 422

    def test_empty_sender_rejected(self, client):
        response = client.post("/messages", json={"sender": "", "text": "hi", "id": "x"})

        assert response.status_code == 422

    def test_rejected_after_shutdown(self, client):
        import main
        main.dispatcher.submit.side_effect = RuntimeError("MessageDispatcher has been shut down")

        response = client.post("/messages", json={"sender": "alice", "text": "hi", "id": "x"})

        assert response.status_code == 503
        assert "shut down" in response.json()["detail"]

    def test_not_initialized(self, client):
        import main
        main.dispatcher = None

        response = client.post("/messages", json={"sender": "alice", "text": "hi", "id": "x"})

        assert response.status_code == 503


class TestConversationEndpoints:
    """Tests for conversation stats and clearing."""

    def test_stats(self, client):
        import main
        main.conversation_store.get_conversation_stats.return_value = {
            "total_turns": 4, "user_turns": 2, "assistant_turns": 2,
            "first_turn_time": None, "last_turn_time": None, "average_response_seconds": 3,
        }

        response = client.get("/conversations/alice/stats")

        assert response.status_code == 200
        assert response.json()["total_turns"] == 4
        main.conversation_store.get_conversation_stats.assert_called_once_with("alice")

    def test_stats_unknown_sender(self, client):
        import main
        main.conversation_store.get_conversation_stats.return_value = None

        response = client.get("/conversations/nobody/stats")

        assert response.status_code == 404

    def test_clear(self, client):
        import main
        main.conversation_store.clear = AsyncMock(return_value=True)

        response = client.delete("/conversations/alice")

        assert response.status_code == 200
        assert response.json() == {"sender": "alice", "cleared": True}

    def test_clear_save_failure(self, client):
        import main
        from services.conversation_store import StorageIOError
        main.conversation_store.clear = AsyncMock(side_effect=StorageIOError("disk full"))

        response = client.delete("/conversations/alice")

        assert response.status_code == 500


class TestHealthAndStatus:
    """Tests for monitoring endpoints."""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_health_healthy(self, client):
        response = client.get("/health")

        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["groq_api"]["message"] == "Groq configured with 2 key(s)"
        assert data["checks"]["storage"]["message"] == "3 conversations"

    def test_health_warns_on_unsaved_changes(self, client):
        import main
        main.conversation_store.is_dirty = True

        assert client.get("/health").json()["status"] == "warning"

    def test_health_deep_failure(self, client):
        import main
        main.llm_client.health_check = AsyncMock(
            return_value={"healthy": False, "error": "Authentication failed. Please check your API key."}
        )

        data = client.get("/health?deep=true").json()

        assert data["status"] == "critical"
        assert "Authentication failed" in data["checks"]["groq_api"]["message"]

    def test_health_without_services(self, client):
        import main
        main.llm_client = None
        main.conversation_store = None

        assert client.get("/health").json()["status"] == "critical"

    def test_status(self, client):
        import main
        main.dispatcher.get_status.return_value = {"active_senders": 0, "queued_messages": 0}

        response = client.get("/status")

        assert response.status_code == 200
        assert response.json()["active_senders"] == 0
