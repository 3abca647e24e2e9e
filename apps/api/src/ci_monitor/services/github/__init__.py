from ci_monitor.services.github.client import GitHubRunProvider, RunProvider
from ci_monitor.services.github.token_manager import TokenManager, TokenState
from ci_monitor.services.github.types import CommitResult, JobRecord, ProviderResult, RunRecord, StepRecord

__all__ = [
    "CommitResult",
    "GitHubRunProvider",
    "JobRecord",
    "ProviderResult",
    "RunProvider",
    "RunRecord",
    "StepRecord",
    "TokenManager",
    "TokenState",
]
