"""Constants and enums for the workflow engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


class StepStatus(str, Enum):
    """Status of a single step within one execution."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"


class TriggerType(str, Enum):
    """Event class that starts an execution."""

    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    EVENT = "event"
    API_CALL = "api_call"
    FILE_UPLOAD = "file_upload"
    DATABASE_CHANGE = "database_change"
    EMAIL_RECEIVED = "email_received"
    FORM_SUBMISSION = "form_submission"
    TIMER = "timer"
    CONDITIONAL = "conditional"


class StepType(str, Enum):
    """Authoring category of a workflow step."""

    ACTION = "action"
    CONDITION = "condition"
    LOOP = "loop"
    PARALLEL = "parallel"
    DELAY = "delay"
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    INTEGRATION = "integration"
    CUSTOM = "custom"


class ActionKind(str, Enum):
    """Closed set of actions a step can dispatch to."""

    SEND_EMAIL = "send_email"
    SEND_NOTIFICATION = "send_notification"
    CREATE_RECORD = "create_record"
    UPDATE_RECORD = "update_record"
    DELETE_RECORD = "delete_record"
    CALL_API = "call_api"
    SEND_WEBHOOK = "send_webhook"
    DELAY = "delay"
    CALCULATE_VALUE = "calculate_value"
    TRANSFORM_DATA = "transform_data"
    VALIDATE_DATA = "validate_data"


class VariableType(str, Enum):
    """Declared type of a workflow variable's stored string value."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"
    SECRET = "secret"
    FILE = "file"
    REFERENCE = "reference"


class ConditionOperator(str, Enum):
    """Operators understood by the condition evaluator."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    EXISTS = "exists"


class LogLevel(str, Enum):
    """Log level for workflow audit logs."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


REDACTED = "[REDACTED]"
