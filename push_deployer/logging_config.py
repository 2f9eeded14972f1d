"""
Centralized logging configuration for push-deployer.

Implements file-based logging with rotation, a dedicated stream of per-step
pipeline outcomes, and structured JSON logging for machine consumption.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

PIPELINE_LOGGER = "push_deployer.pipeline.steps"
GATEWAY_LOGGER = "push_deployer.gateway.access"

# Record attributes copied into structured output when present
CONTEXT_FIELDS = ("run_id", "revision", "workload", "step", "status", "exit_code", "duration_ms")


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON for better parsing."""
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_obj[field] = getattr(record, field)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter for console and file logs."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False):
        """Initialize formatter with optional color support."""
        self.use_colors = use_colors
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format with optional colors for console output."""
        message = super().format(record)
        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            message = message.replace(
                record.levelname, f"{color}{record.levelname}{self.RESET}", 1
            )
        return message


def setup_logging(
    log_dir: str = "/var/log/push-deployer",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    use_json: bool = False,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 10,
) -> None:
    """
    Configure logging for push-deployer.

    Args:
        log_dir: Directory for log files
        console_level: Console logging level
        file_level: File logging level
        use_json: Use JSON formatting for files
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep

    Raises:
        PermissionError: If the log directory cannot be created or written
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, console_level))
    console_handler.setFormatter(HumanReadableFormatter(use_colors=sys.stdout.isatty()))
    root_logger.addHandler(console_handler)

    file_formatter = StructuredFormatter() if use_json else HumanReadableFormatter()

    # Main application log
    main_handler = logging.handlers.RotatingFileHandler(
        log_path / "deployer.log", maxBytes=max_bytes, backupCount=backup_count
    )
    main_handler.setLevel(getattr(logging, file_level))
    main_handler.setFormatter(file_formatter)
    root_logger.addHandler(main_handler)

    # Error-only log for monitoring
    error_handler = logging.handlers.RotatingFileHandler(
        log_path / "error.log", maxBytes=max_bytes, backupCount=backup_count
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(file_formatter)
    root_logger.addHandler(error_handler)

    # One structured line per pipeline step, always JSON
    steps_logger = logging.getLogger(PIPELINE_LOGGER)
    steps_handler = logging.handlers.RotatingFileHandler(
        log_path / "pipeline-steps.log", maxBytes=max_bytes, backupCount=backup_count
    )
    steps_handler.setFormatter(StructuredFormatter())
    steps_logger.handlers.clear()
    steps_logger.addHandler(steps_handler)
    steps_logger.setLevel(logging.INFO)
    steps_logger.propagate = False

    # Webhook access log
    gateway_logger = logging.getLogger(GATEWAY_LOGGER)
    gateway_handler = logging.handlers.RotatingFileHandler(
        log_path / "gateway-access.log", maxBytes=max_bytes, backupCount=backup_count
    )
    gateway_handler.setFormatter(file_formatter)
    gateway_logger.handlers.clear()
    gateway_logger.addHandler(gateway_handler)
    gateway_logger.setLevel(logging.INFO)
    gateway_logger.propagate = False

    # Set third-party loggers to WARNING to reduce noise
    logging.getLogger("docker").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.WARNING)

    root_logger.info(
        f"Logging initialized - Console: {console_level}, File: {file_level}, "
        f"Directory: {log_dir}, JSON: {use_json}"
    )


def setup_basic_logging(console_level: str = "INFO") -> None:
    """Console-only logging, used when the log directory is not writable."""
    logging.basicConfig(
        level=getattr(logging, console_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


class LogContext:
    """Context manager for adding contextual information to logs."""

    def __init__(self, **kwargs: Any):
        """
        Initialize log context.

        Args:
            **kwargs: Context fields to add to all records created inside the block
        """
        self.context = kwargs
        self.old_factory: Optional[Any] = None

    def __enter__(self) -> "LogContext":
        """Enter context and inject fields."""
        old_factory = logging.getLogRecordFactory()
        self.old_factory = old_factory
        context = self.context

        def record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
            record = old_factory(*args, **kwargs)
            for key, value in context.items():
                if not hasattr(record, key):
                    setattr(record, key, value)
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit context and restore factory."""
        if self.old_factory:
            logging.setLogRecordFactory(self.old_factory)


def log_step_outcome(
    run_id: str,
    step: str,
    status: str,
    message: str = "",
    exit_code: Optional[int] = None,
    duration_ms: Optional[int] = None,
) -> None:
    """
    Log the outcome of one pipeline step.

    Args:
        run_id: Pipeline run identifier
        step: Step name (sync, build, publish, ...)
        status: success, failure, timeout or skipped
        message: Detail for operators
        exit_code: External command exit code where applicable
        duration_ms: How long the step took
    """
    logger = logging.getLogger(PIPELINE_LOGGER)
    level = logging.INFO if status in ("success", "skipped") else logging.ERROR
    if not logger.isEnabledFor(level):
        return

    text = f"Step {step}: {status.upper()}"
    if message:
        text += f" - {message}"

    fields: Dict[str, Any] = {"run_id": run_id, "step": step, "status": status}
    if exit_code is not None:
        fields["exit_code"] = exit_code
    if duration_ms is not None:
        fields["duration_ms"] = duration_ms

    # Set attributes directly: passing them as `extra` would collide with
    # fields a surrounding LogContext already put on the record.
    record = logger.makeRecord(logger.name, level, __file__, 0, text, (), None, "log_step_outcome")
    for key, value in fields.items():
        setattr(record, key, value)
    logger.handle(record)
