"""Test usage models."""

import pytest
from pydantic import ValidationError

from assist_adoption.models.usage import (
    COUNT_DERIVED_APPS,
    NATIVE_APPS,
    AppType,
    InteractionRecord,
    UsageSnapshot,
    UserAggregationMessage,
)


class TestUsageSnapshot:
    def test_parses_report_aliases(self):
        snapshot = UsageSnapshot.model_validate(
            {
                "userPrincipalName": "a@contoso.com",
                "reportRefreshDate": "2024-01-05",
                "lastActivityDate": "",
                "microsoftTeamsCopilotLastActivityDate": "2024-01-05",
                "copilotChatLastActivityDate": "2024-01-04",
            }
        )

        assert snapshot.last_activity_date is None
        assert snapshot.native_last_activity(AppType.TEAMS) == "2024-01-05"
        assert snapshot.native_last_activity(AppType.COPILOT_CHAT) == "2024-01-04"
        assert snapshot.native_last_activity(AppType.WORD) is None
        assert snapshot.native_last_activity(AppType.FORMS) is None

    def test_rejects_bad_report_date(self):
        with pytest.raises(ValidationError):
            UsageSnapshot(user_principal_name="a@contoso.com", report_refresh_date="2024/01/05")

    def test_requires_identifier(self):
        with pytest.raises(ValidationError):
            UsageSnapshot(user_principal_name="", report_refresh_date="2024-01-05")


class TestInteractionRecord:
    def test_camel_case_wire_names(self):
        record = InteractionRecord.model_validate(
            {
                "userId": "a@contoso.com",
                "appHost": "Teams",
                "eventDate": "2024-01-05",
                "contextTypes": ["TeamsChat"],
                "pluginIds": ["BingWebSearch"],
                "agentId": "agent-1",
            }
        )
        assert record.context_types == ["TeamsChat"]
        assert record.agent_id == "agent-1"
        assert record.agent_name is None

    def test_rejects_bad_event_date(self):
        with pytest.raises(ValidationError):
            InteractionRecord(user_id="a@contoso.com", app_host="Word", event_date="5 Jan")


class TestUserAggregationMessage:
    def test_json_roundtrip_uses_fixed_names(self):
        message = UserAggregationMessage(encrypted_upn="enc", report_refresh_date="2024-01-05")
        text = message.to_json()
        assert '"EncryptedUPN"' in text
        assert UserAggregationMessage.from_json(text) == message

    def test_invalid_json(self):
        with pytest.raises(ValueError):
            UserAggregationMessage.from_json('{"EncryptedUPN": "enc"}')


def test_app_groups_are_disjoint_and_complete():
    assert not set(NATIVE_APPS) & set(COUNT_DERIVED_APPS)
    assert set(NATIVE_APPS) | set(COUNT_DERIVED_APPS) | {AppType.ALL} == set(AppType)
