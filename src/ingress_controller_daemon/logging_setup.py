import os
import json
import logging
from logging.handlers import RotatingFileHandler


def _is_structured(record) -> bool:
    return hasattr(record, 'json_fields') and bool(record.json_fields.get('structured_event'))


class StructuredFormatter(logging.Formatter):
    """
    Formatter that renders structured events as compact single-line JSON.
    """
    def format(self, record):
        if _is_structured(record):
            return json.dumps(record.json_fields, separators=(',', ':'), default=str)
        return super().format(record)


class StructuredFilter(logging.Filter):
    """
    Filter that only allows structured log events to pass through.
    """
    def filter(self, record):
        return _is_structured(record)


class NonStructuredFilter(logging.Filter):
    """
    Filter that only allows non-structured log events to pass through.
    """
    def filter(self, record):
        return not _is_structured(record)


def setup_logger(name: str, level: str, log_file: str | None = None, max_bytes: int = 10 * 1024 * 1024,
                 backup_count: int = 5, enable_structured_console: bool = False,
                 enable_structured_file: bool = False, structured_log_file: str | None = None):
    """
    Configure the root daemon logger.

    Child loggers ("<name>.launch", "<name>.manager", ...) propagate to it,
    so handlers are only attached here.

    Args:
        name (str): Root logger name.
        level (str): Level name, e.g. "INFO".
        log_file (str): Optional rotating log file for human-readable records.
        enable_structured_console (bool): Output JSON to console for structured events
        enable_structured_file (bool): Output JSON lines to a separate structured log file
        structured_log_file (str): Path to structured JSON log file
    """
    logger_name = name or os.getenv("LOGGER_NAME", "INGRESS_CONTROLLER")
    logger = logging.getLogger(logger_name)
    log_level = getattr(logging, level, logging.INFO)
    logger.setLevel(log_level)

    regular_formatter = logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s')
    structured_formatter = StructuredFormatter()

    ch = logging.StreamHandler()
    ch.setLevel(log_level)
    if enable_structured_console:
        ch.setFormatter(structured_formatter)
    else:
        ch.setFormatter(regular_formatter)
        ch.addFilter(NonStructuredFilter())
    logger.addHandler(ch)
    if enable_structured_console:
        logger.info("Console structured logging enabled")

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            fh = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
            fh.setLevel(log_level)
            fh.setFormatter(regular_formatter)
            fh.addFilter(NonStructuredFilter())
            logger.addHandler(fh)
            logger.info(f"Regular file logging enabled: {log_file}")
        except OSError as e:
            logger.warning(f"Could not setup regular file logging at {log_file}: {e}")

    if enable_structured_file and structured_log_file:
        try:
            structured_dir = os.path.dirname(structured_log_file)
            if structured_dir:
                os.makedirs(structured_dir, exist_ok=True)
            sfh = RotatingFileHandler(structured_log_file, maxBytes=max_bytes, backupCount=backup_count)
            sfh.setLevel(log_level)
            sfh.setFormatter(structured_formatter)
            sfh.addFilter(StructuredFilter())
            logger.addHandler(sfh)
            logger.info(f"Structured JSON file logging enabled: {structured_log_file}")
        except OSError as e:
            logger.warning(f"Could not setup structured file logging at {structured_log_file}: {e}")

    return logger


def enable_cloud_logging(logger: logging.Logger, level: str, name: str = "ingress_controller_daemon") -> bool:
    """
    Attach a Google Cloud Logging handler to the logger.

    Returns:
        bool: True if the handler was attached. Failure only logs a warning;
            the daemon runs fine with local logging.
    """
    try:
        import google.cloud.logging
        from google.cloud.logging.handlers import CloudLoggingHandler
        client = google.cloud.logging.Client()
        cloud_handler = CloudLoggingHandler(client, name=name)
        cloud_handler.setLevel(getattr(logging, level, logging.INFO))
        logger.addHandler(cloud_handler)
        logger.info("Google Cloud Logging handler enabled.")
        return True
    except Exception as e:
        logger.warning(f"Could not enable Google Cloud Logging: {e}")
        return False
