import logging
import io
import sys
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
if project_root not in sys.path:
    sys.path.append(project_root)


LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


class AutoFlushHandler(logging.StreamHandler):
    def emit(self, record):
        super().emit(record)
        self.flush()  # force flush after each log message


def setup_logging(run_name, entity_id, logs_dir: Optional[str] = None, log_to_file: bool = True):
    """Create a uniquely named run logger with buffer, console and file handlers.

    Returns (logger, log_buffer). The buffer keeps the whole run log in memory
    so it can be uploaded to S3 at the end of the run (or on failure).
    """
    # Create unique logger name with timestamp and process ID to prevent collisions
    timestamp = int(time.time() * 1000)  # milliseconds for uniqueness
    process_id = os.getpid()
    logger_name = f"logger_{run_name}_{entity_id}_{timestamp}_{process_id}"
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    log_buffer = io.StringIO()

    # Clear existing handlers
    if logger.hasHandlers():
        logger.handlers.clear()

    # Memory buffer
    buffer_handler = logging.StreamHandler(log_buffer)
    buffer_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(buffer_handler)

    # Console (with auto flush)
    console_handler = AutoFlushHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(console_handler)

    if log_to_file:
        # File handler with unique filename to prevent conflicts
        timestamp_str = time.strftime("%Y%m%d_%H%M%S")
        target_dir = Path(logs_dir) if logs_dir else Path(project_root) / "logs"
        target_dir.mkdir(parents=True, exist_ok=True)

        output_log_path = target_dir / f"{run_name}_{entity_id}_{timestamp_str}_{process_id}.txt"
        file_handler = logging.FileHandler(str(output_log_path), mode="w")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    return logger, log_buffer


def close_logging(logger):
    """Flush and detach all handlers (file handles are released)."""
    for handler in list(logger.handlers):
        try:
            handler.flush()
            handler.close()
        finally:
            logger.removeHandler(handler)


def build_log_s3_path(bucket, run_name, entity_id, suffix=None, prefix=None):
    from helpers_waitlist.constants import S3_LOG_PREFIX

    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    name = f"log_{timestamp}_{suffix}.txt" if suffix else f"log_{timestamp}.txt"
    return f"s3://{bucket}/{prefix or S3_LOG_PREFIX}/{run_name}/{entity_id}/{name}"


def save_logs_to_s3(log_buffer, bucket, run_name, entity_id, logger=None, checkpoint_name=None):
    """Save captured logs to S3 using standard text writer."""
    try:
        # Validate input parameters to prevent None values in S3 paths
        if not bucket:
            raise ValueError("bucket cannot be None or empty")
        if not run_name:
            raise ValueError("run_name cannot be None or empty")
        if entity_id is None or entity_id == "":
            raise ValueError("entity_id cannot be None or empty")

        from helpers_waitlist.s3_utils import save_to_s3_text

        log_path = build_log_s3_path(bucket, run_name, entity_id, suffix=checkpoint_name)
        save_to_s3_text(log_buffer.getvalue(), log_path, logger=logger)

        if logger:
            logger.info(f"✓ Logs saved to S3: {log_path}")
        return log_path

    except Exception as e:
        if logger:
            logger.warning(f"⚠ Warning: Could not save logs to S3: {str(e)}")
        else:
            print(f"⚠ Warning: Could not save logs to S3: {str(e)}")
        return None


def save_logs_immediate(log_buffer, bucket, run_name, entity_id, logger=None, reason="immediate"):
    """Save logs immediately for critical situations (crashes, errors, etc.)."""
    return save_logs_to_s3(log_buffer, bucket, run_name, entity_id, logger=logger, checkpoint_name=reason)
