"""Unit tests for intervention API endpoints."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import jwt
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.api.dependencies import get_current_user, get_policy_engine
from src.api.interventions import router
from src.models.intervention import (
    CandidateAction,
    DailyState,
    FeedbackStat,
    InterventionDecision,
    InterventionFeedback,
    InterventionLog,
    InterventionPreferences,
    ScoredCandidate,
    SuggestionPreference,
)
from src.models.user import User
from src.services.intervention_log_service import (
    FeedbackAlreadyRecordedError,
    InterventionLogNotFoundError,
)

NOW = datetime(2024, 5, 10, 5, 0, tzinfo=timezone.utc)
TEST_SECRET = "unit-test-secret-0123456789abcdef0123"


@pytest.fixture
def current_user():
    return User(id=uuid4())


@pytest.fixture
def engine():
    return AsyncMock()


@pytest.fixture
def app(current_user, engine):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_current_user] = lambda: current_user
    app.dependency_overrides[get_policy_engine] = lambda: engine
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def _log(user_id, feedback=None):
    return InterventionLog(
        id=uuid4(),
        user_id=user_id,
        action_type="risk_alert",
        payload={"text": "evening_backlog"},
        fired_at=NOW,
        feedback=feedback,
        feedback_at=NOW if feedback else None,
    )


class TestEvaluate:
    def test_returns_decision(self, client, engine, current_user):
        candidate = CandidateAction(action_type="risk_alert", title="Heads up", body="Dentist at 3pm")
        engine.evaluate.return_value = InterventionDecision(
            should_intervene=True,
            selected=ScoredCandidate(candidate=candidate, final_score=0.9),
            intervention_id=uuid4(),
            delivered=True,
        )

        response = client.post(
            "/interventions/evaluate",
            json={"agent": "jarvis", "candidates": [candidate.model_dump(mode="json")]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["should_intervene"] is True
        assert data["selected"]["candidate"]["action_type"] == "risk_alert"
        args, kwargs = engine.evaluate.call_args
        assert args[0] == str(current_user.id)
        assert kwargs["agent"].value == "jarvis"
        assert len(kwargs["candidates"]) == 1

    def test_engine_failure_is_still_200(self, client, engine):
        engine.evaluate.side_effect = RuntimeError("unexpected")

        response = client.post("/interventions/evaluate", json={})

        assert response.status_code == 200
        assert response.json()["reason_codes"] == ["engine_error"]
        assert response.json()["should_intervene"] is False


class TestFeedback:
    def test_records_feedback(self, client, current_user):
        service = AsyncMock()
        service.record_feedback.return_value = _log(current_user.id, InterventionFeedback.ACCEPTED)
        log_id = uuid4()

        with patch("src.api.interventions.InterventionLogService", return_value=service):
            response = client.post(f"/interventions/{log_id}/feedback", json={"feedback": "accepted"})

        assert response.status_code == 200
        assert response.json()["feedback"] == "accepted"
        args = service.record_feedback.call_args[0]
        assert args[1] == log_id
        assert args[2] == InterventionFeedback.ACCEPTED

    def test_unknown_intervention_is_404(self, client):
        service = AsyncMock()
        service.record_feedback.side_effect = InterventionLogNotFoundError("x")

        with patch("src.api.interventions.InterventionLogService", return_value=service):
            response = client.post(f"/interventions/{uuid4()}/feedback", json={"feedback": "dismissed"})

        assert response.status_code == 404

    def test_second_feedback_is_409(self, client):
        service = AsyncMock()
        service.record_feedback.side_effect = FeedbackAlreadyRecordedError("x")

        with patch("src.api.interventions.InterventionLogService", return_value=service):
            response = client.post(f"/interventions/{uuid4()}/feedback", json={"feedback": "dismissed"})

        assert response.status_code == 409

    def test_invalid_feedback_value(self, client):
        response = client.post(f"/interventions/{uuid4()}/feedback", json={"feedback": "maybe"})

        assert response.status_code == 422


class TestReadEndpoints:
    def test_state(self, client):
        detector = AsyncMock()
        detector.detect_daily_state.return_value = DailyState(
            energy_level=5, stress_level=3, completion_rate=0.0, local_hour=14, detected_at=NOW
        )

        with patch("src.api.interventions.SignalDetector", return_value=detector):
            response = client.get("/interventions/state")

        assert response.status_code == 200
        assert response.json()["stress_level"] == 3

    def test_state_unavailable(self, client):
        detector = AsyncMock()
        detector.detect_daily_state.side_effect = ConnectionError("db down")

        with patch("src.api.interventions.SignalDetector", return_value=detector):
            response = client.get("/interventions/state")

        assert response.status_code == 503

    def test_weights(self, client, current_user):
        aggregator = AsyncMock()
        aggregator.get_stats.return_value = [
            FeedbackStat(
                user_id=current_user.id,
                action_type="risk_alert",
                weight_multiplier=2.0,
                total_count=10,
                updated_at=NOW,
            ),
        ]

        with patch("src.api.interventions.FeedbackAggregator", return_value=aggregator):
            response = client.get("/interventions/weights")

        data = response.json()
        assert data["weights"] == {"risk_alert": 2.0}
        assert data["stats"][0]["total_count"] == 10

    @pytest.mark.parametrize(
        "path,patch_target,method",
        [
            ("/interventions/weights", "FeedbackAggregator", "get_stats"),
            ("/interventions/preferences", "PreferenceAggregator", "get_suggestion_preferences"),
            ("/interventions/recent", "InterventionLogService", "list_recent"),
        ],
    )
    def test_read_endpoints_degrade_to_503(self, client, path, patch_target, method):
        service = AsyncMock()
        getattr(service, method).side_effect = ConnectionError("db down")

        with patch(f"src.api.interventions.{patch_target}", return_value=service):
            response = client.get(path)

        assert response.status_code == 503

    def test_preferences_absent(self, client):
        aggregator = AsyncMock()
        aggregator.get_suggestion_preferences.return_value = None

        with patch("src.api.interventions.PreferenceAggregator", return_value=aggregator):
            response = client.get("/interventions/preferences")

        assert response.status_code == 200
        assert response.json() is None
        aggregator.compute_suggestion_preferences.assert_not_called()

    def test_preferences_recompute(self, client):
        aggregator = AsyncMock()
        aggregator.compute_suggestion_preferences.return_value = SuggestionPreference(
            category_weights={"rest": 1.4}, top_categories=["rest"], updated_at=NOW
        )

        with patch("src.api.interventions.PreferenceAggregator", return_value=aggregator):
            response = client.get("/interventions/preferences?recompute=true")

        aggregator.compute_suggestion_preferences.assert_awaited_once()
        assert response.json()["topCategories"] == ["rest"]

    def test_recent(self, client, current_user):
        service = AsyncMock()
        service.list_recent.return_value = [_log(current_user.id)]

        with patch("src.api.interventions.InterventionLogService", return_value=service):
            response = client.get("/interventions/recent?limit=5")

        assert response.status_code == 200
        assert len(response.json()) == 1
        assert service.list_recent.call_args[1]["limit"] == 5


class TestSuggestionEvents:
    def test_records_event(self, client):
        aggregator = AsyncMock()
        aggregator.record_suggestion_event.return_value = "evt-1"

        with patch("src.api.interventions.PreferenceAggregator", return_value=aggregator):
            response = client.post(
                "/interventions/suggestion-events",
                json={"event_type": "ai_suggestion_accepted", "metadata": {"category": "rest"}},
            )

        assert response.status_code == 201
        assert response.json() == {"id": "evt-1"}

    def test_rejects_unknown_event_type(self, client):
        response = client.post("/interventions/suggestion-events", json={"event_type": "clicked"})

        assert response.status_code == 422


class TestSettings:
    def test_update_settings(self, client):
        service = AsyncMock()
        service.update_preferences.return_value = InterventionPreferences(cooldown_minutes=30)

        with patch("src.api.interventions.ProactiveService", return_value=service):
            response = client.put("/interventions/settings", json={"cooldown_minutes": 30})

        assert response.status_code == 200
        assert response.json()["cooldown_minutes"] == 30
        assert service.update_preferences.call_args[1] == {"cooldown_minutes": 30}

    def test_rejects_unknown_timezone(self, client):
        service = AsyncMock()

        with patch("src.api.interventions.ProactiveService", return_value=service):
            response = client.put("/interventions/settings", json={"timezone": "Mars/Olympus"})

        assert response.status_code == 400
        service.update_preferences.assert_not_called()

    def test_max_level(self, client):
        service = AsyncMock()
        service.update_preferences.return_value = InterventionPreferences(max_level=3)

        with patch("src.api.interventions.ProactiveService", return_value=service):
            ok = client.put("/interventions/settings", json={"max_level": 3})
            too_loud = client.put("/interventions/settings", json={"max_level": 4})

        assert ok.json()["max_level"] == 3
        assert service.update_preferences.call_args[1] == {"max_level": 3}
        assert too_loud.status_code == 422


class TestAuthentication:
    @pytest.fixture
    def auth_client(self):
        app = FastAPI()
        app.include_router(router)
        app.dependency_overrides[get_policy_engine] = lambda: AsyncMock(
            evaluate=AsyncMock(return_value=InterventionDecision(reason_codes=["disabled"]))
        )
        return TestClient(app)

    def test_missing_token(self, auth_client):
        response = auth_client.post("/interventions/evaluate", json={})

        assert response.status_code in (401, 403)

    def test_invalid_token(self, auth_client):
        response = auth_client.post(
            "/interventions/evaluate", json={}, headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401

    def test_valid_token(self, auth_client):
        user_id = uuid4()
        settings = MagicMock(jwt_secret=TEST_SECRET, jwt_algorithm="HS256")
        token = jwt.encode({"sub": str(user_id)}, TEST_SECRET, algorithm="HS256")

        with patch("src.services.auth_service.get_settings", return_value=settings):
            response = auth_client.post(
                "/interventions/evaluate", json={}, headers={"Authorization": f"Bearer {token}"}
            )

        assert response.status_code == 200
        assert response.json()["reason_codes"] == ["disabled"]

    def test_token_without_uuid_subject(self, auth_client):
        settings = MagicMock(jwt_secret=TEST_SECRET, jwt_algorithm="HS256")
        token = jwt.encode({"sub": "not-a-uuid"}, TEST_SECRET, algorithm="HS256")

        with patch("src.services.auth_service.get_settings", return_value=settings):
            response = auth_client.post(
                "/interventions/evaluate", json={}, headers={"Authorization": f"Bearer {token}"}
            )

        assert response.status_code == 401
