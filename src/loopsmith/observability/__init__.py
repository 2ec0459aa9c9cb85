from loopsmith.observability.logger import (
    bind_iteration,
    bind_session,
    clear_session,
    get_logger,
    setup_logging,
)

__all__ = ["bind_iteration", "bind_session", "clear_session", "get_logger", "setup_logging"]
