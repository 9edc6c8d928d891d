from dataclasses import dataclass, field

from bizplan_chat.retry import RetryPolicy
from bizplan_chat.usage_gate import UsageLimits


@dataclass
class CoordinatorConfig:
    limits: UsageLimits = field(default_factory=UsageLimits)
    max_message_length: int = 2000
    message_policy: RetryPolicy = field(default_factory=RetryPolicy)
    creation_policy: RetryPolicy = field(default_factory=RetryPolicy)
    estimated_wait_seconds: float = 30.0
