import sys, logging
from .config import Config
from .logging_setup import setup_logger
from .daemon import startup, ConfigurationError, EXIT_FATAL, EXIT_LOCK_HELD
from .lockfile import LockHeldError


def main():

    cfg = Config()

    logger = setup_logger(
        name=cfg.logger_name,
        level=cfg.log_level,
        log_file=cfg.log_file,
        max_bytes=cfg.log_max_bytes,
        backup_count=cfg.log_backup_count,
        enable_syslog=cfg.enable_syslog,
        syslog_address=cfg.syslog_address,
        enable_structured_console=cfg.enable_structured_console,
        enable_structured_file=cfg.enable_structured_file,
        structured_log_file=cfg.structured_log_file
    )

    exit_code = 0
    scheduler = None
    try:
        scheduler = startup(cfg)
        exit_code = scheduler.run()
    except LockHeldError as e:
        logger.error(str(e))
        exit_code = EXIT_LOCK_HELD
    except ConfigurationError:
        logger.critical("Cannot start monitor with invalid configuration. Please fix the above errors.")
        exit_code = EXIT_FATAL
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
        exit_code = 130
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        exit_code = EXIT_FATAL
    finally:
        if scheduler is not None:
            scheduler.stop()
        for h in logger.handlers:
            try:
                h.flush()
            except Exception:
                pass
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
