"""Usage domain models: application buckets, snapshots, interactions and queue messages."""

import enum
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DATE_FORMAT = "%Y-%m-%d"
EPOCH_DATE = "1970-01-01"

# Stored property names on aggregate entities
TOTAL_DAILY_ACTIVITY_COUNT = "TotalDailyActivityCount"
TOTAL_INTERACTION_COUNT = "TotalInteractionCount"
CURRENT_DAILY_STREAK = "CurrentDailyStreak"
BEST_DAILY_STREAK = "BestDailyStreak"
LAST_PROCESSED_DATE = "LastProcessedDate"
AGENT_NAME = "AgentName"


class AppType(str, enum.Enum):
    """Closed set of application buckets usage is aggregated into."""

    TEAMS = "Teams"
    OUTLOOK = "Outlook"
    WORD = "Word"
    EXCEL = "Excel"
    POWERPOINT = "PowerPoint"
    ONENOTE = "OneNote"
    LOOP = "Loop"
    COPILOT_CHAT = "CopilotChat"
    ALL = "All"
    MAC = "MAC"
    DESIGNER = "Designer"
    SHAREPOINT = "SharePoint"
    PLANNER = "Planner"
    WHITEBOARD = "Whiteboard"
    STREAM = "Stream"
    FORMS = "Forms"
    COPILOT_ACTION = "CopilotAction"
    WEB_PLUGIN = "WebPlugin"
    AGENT = "Agent"
    COPILOT_STUDIO = "CopilotStudio"


# Apps with a dedicated last-activity date on the usage report
NATIVE_APPS = (
    AppType.TEAMS,
    AppType.OUTLOOK,
    AppType.WORD,
    AppType.EXCEL,
    AppType.POWERPOINT,
    AppType.ONENOTE,
    AppType.LOOP,
    AppType.COPILOT_CHAT,
)

# Apps whose daily usage comes from the same-day interaction count
COUNT_DERIVED_APPS = (
    AppType.MAC,
    AppType.DESIGNER,
    AppType.SHAREPOINT,
    AppType.PLANNER,
    AppType.WHITEBOARD,
    AppType.STREAM,
    AppType.FORMS,
    AppType.COPILOT_ACTION,
    AppType.WEB_PLUGIN,
    AppType.AGENT,
    AppType.COPILOT_STUDIO,
)


class Timeframe(str, enum.Enum):
    """Aggregation windows."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ALL_TIME = "alltime"


def parse_date(value: str) -> date:
    """Parse a zero-padded yyyy-MM-dd string. Raises ValueError otherwise."""
    if not isinstance(value, str) or len(value) != 10:
        raise ValueError(f"Expected a yyyy-MM-dd date, got {value!r}")
    return datetime.strptime(value, DATE_FORMAT).date()


def format_date(value: date) -> str:
    return value.strftime(DATE_FORMAT)


def _validate_date_string(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    parse_date(value)
    return value


class UsageSnapshot(BaseModel):
    """One user's row from the daily usage report. Identifier is plaintext here."""

    model_config = ConfigDict(populate_by_name=True)

    user_principal_name: str = Field(alias="userPrincipalName", min_length=1)
    display_name: Optional[str] = Field(default=None, alias="displayName")
    report_refresh_date: str = Field(alias="reportRefreshDate")
    last_activity_date: Optional[str] = Field(default=None, alias="lastActivityDate")

    teams_last_activity_date: Optional[str] = Field(
        default=None, alias="microsoftTeamsCopilotLastActivityDate"
    )
    outlook_last_activity_date: Optional[str] = Field(
        default=None, alias="outlookCopilotLastActivityDate"
    )
    word_last_activity_date: Optional[str] = Field(
        default=None, alias="wordCopilotLastActivityDate"
    )
    excel_last_activity_date: Optional[str] = Field(
        default=None, alias="excelCopilotLastActivityDate"
    )
    powerpoint_last_activity_date: Optional[str] = Field(
        default=None, alias="powerPointCopilotLastActivityDate"
    )
    onenote_last_activity_date: Optional[str] = Field(
        default=None, alias="oneNoteCopilotLastActivityDate"
    )
    loop_last_activity_date: Optional[str] = Field(
        default=None, alias="loopCopilotLastActivityDate"
    )
    copilot_chat_last_activity_date: Optional[str] = Field(
        default=None, alias="copilotChatLastActivityDate"
    )

    @field_validator("report_refresh_date")
    @classmethod
    def validate_report_refresh_date(cls, v):
        parse_date(v)
        return v

    @field_validator("last_activity_date")
    @classmethod
    def validate_last_activity_date(cls, v):
        return _validate_date_string(v)

    def native_last_activity(self, app: AppType) -> Optional[str]:
        """Last-activity date the report carries for a native app."""
        return {
            AppType.TEAMS: self.teams_last_activity_date,
            AppType.OUTLOOK: self.outlook_last_activity_date,
            AppType.WORD: self.word_last_activity_date,
            AppType.EXCEL: self.excel_last_activity_date,
            AppType.POWERPOINT: self.powerpoint_last_activity_date,
            AppType.ONENOTE: self.onenote_last_activity_date,
            AppType.LOOP: self.loop_last_activity_date,
            AppType.COPILOT_CHAT: self.copilot_chat_last_activity_date,
        }.get(app)


class InteractionRecord(BaseModel):
    """A normalized assistant interaction from the audit feed."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: str = Field(min_length=1)
    app_host: str
    event_date: str
    context_types: List[str] = Field(default_factory=list)
    plugin_ids: List[str] = Field(default_factory=list)
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None

    @field_validator("event_date")
    @classmethod
    def validate_event_date(cls, v):
        parse_date(v)
        return v


class UserAggregationMessage(BaseModel):
    """Work item for one user's aggregation. Wire names are fixed."""

    model_config = ConfigDict(populate_by_name=True)

    encrypted_upn: str = Field(alias="EncryptedUPN", min_length=1)
    report_refresh_date: str = Field(alias="ReportRefreshDate")

    @field_validator("report_refresh_date")
    @classmethod
    def validate_report_refresh_date(cls, v):
        parse_date(v)
        return v

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, text: str) -> "UserAggregationMessage":
        return cls.model_validate_json(text)
