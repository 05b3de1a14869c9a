"""Table names used by the aggregation and key rotation services."""

# Daily side tables written by interaction ingestion (pk "{date}-{enc}")
DAILY_APP_AGGREGATES = "CopilotInteractionDailyAggregationByAppAndUser"
DAILY_AGENT_AGGREGATES = "AgentInteractionDailyAggregationByUserAndAgentId"

# Timeframe aggregates (rk = encrypted identifier)
WEEKLY_USAGE = "CopilotUsageWeeklySnapshots"
MONTHLY_USAGE = "CopilotUsageMonthlySnapshots"
ALL_TIME_USAGE = "CopilotUsageAllTimeRecord"

# Agent aggregates by user (rk = encrypted identifier)
WEEKLY_AGENT_BY_USER = "AgentUsageWeeklyByUserSnapshots"
MONTHLY_AGENT_BY_USER = "AgentUsageMonthlyByUserSnapshots"
ALL_TIME_AGENT_BY_USER = "AgentUsageAllTimeByUserRecord"

# Agent totals, no user dimension
WEEKLY_AGENT_TOTALS = "AgentUsageWeeklySnapshots"
MONTHLY_AGENT_TOTALS = "AgentUsageMonthlySnapshots"
ALL_TIME_AGENT_TOTALS = "AgentUsageAllTimeRecord"

# Inactivity ledger (pk = encrypted identifier)
LAST_USAGE_TRACKER = "UsersLastUsageTracker"

REPORT_REFRESH = "ReportRefreshRecord"
WEBHOOK_STATE = "WebhookFunctionState"
UNHANDLED_APP_HOSTS = "UnhandledAppHosts"
KEY_ROTATION_PROGRESS = "KeyRotationProgress"

# Tables whose partition key is "{yyyy-MM-dd}-{enc}"
DATE_PREFIXED_PARTITION_TABLES = (
    DAILY_AGENT_AGGREGATES,
    DAILY_APP_AGGREGATES,
)

# Tables whose row key is the encrypted identifier, with the timeframe that scopes them
ROW_KEY_TABLES = (
    (WEEKLY_USAGE, "weekly"),
    (MONTHLY_USAGE, "monthly"),
    (ALL_TIME_USAGE, "alltime"),
    (WEEKLY_AGENT_BY_USER, "weekly"),
    (MONTHLY_AGENT_BY_USER, "monthly"),
    (ALL_TIME_AGENT_BY_USER, "alltime"),
)

# Tables whose whole partition key is the encrypted identifier
WHOLE_PARTITION_TABLES = (LAST_USAGE_TRACKER,)
