from .coordinator import EventCoordinator, RetryPolicy

__all__ = ["EventCoordinator", "RetryPolicy"]
