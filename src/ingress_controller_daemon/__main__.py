import sys
from .config import Config
from .logging_setup import setup_logger, enable_cloud_logging
from .launch import run


def main():

    cfg = Config()

    logger = setup_logger(
        name=cfg.logger_name,
        level=cfg.log_level,
        log_file=cfg.log_file,
        max_bytes=cfg.log_max_bytes,
        backup_count=cfg.log_backup_count,
        enable_structured_console=cfg.enable_structured_console,
        enable_structured_file=cfg.enable_structured_file,
        structured_log_file=cfg.structured_log_file
    )

    if cfg.enable_gcp_logging:
        enable_cloud_logging(logger, cfg.log_level)

    exit_code = 0

    def record_exit(code):
        nonlocal exit_code
        exit_code = code

    try:
        run(exit_handler=record_exit, logger=logger)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
        exit_code = 130
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        exit_code = 1
    finally:
        for h in logger.handlers:
            try:
                h.flush()
            except Exception:
                pass
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
