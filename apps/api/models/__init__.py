"""Models package."""

from .user import User
from .plan import Plan
from .credit_transaction import CreditTransaction
from .generation import Generation
from .audit_log import AuditLogEntry
from .tool_config import ToolConfig
from .risk_flag import RiskFlag
from .usage_stat import UsageStat
