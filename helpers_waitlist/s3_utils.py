"""
S3 transfer helpers for reconciliation outputs, run logs and pipeline state.

All uploads go through the shared client in common_imports and are retried
with tenacity.
"""

import io
import json
import os
import sys
import logging
from typing import Any, Dict, Optional, Union

import pandas as pd
from tenacity import retry, stop_after_attempt, wait_exponential

# Set root of project (e.g., /home/analyst/waitlist-reconciliation)
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if project_root not in sys.path:
    sys.path.append(project_root)

from helpers_waitlist.common_imports import s3_client, S3_TRANSFER_CONFIG
from helpers_waitlist.data_utils import convert_json_serializable

RECORDS_OBJECT = "canonical_records.parquet"
REPORT_OBJECT = "reconciliation_report.json"


def _parse_s3_path_components(s3_path: str) -> tuple[str, str]:
    """Split s3://bucket/key into (bucket, key)."""
    if not s3_path.startswith("s3://"):
        raise ValueError(f"Invalid S3 path: {s3_path}")
    parts = s3_path[len("s3://"):].split("/", 1)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError(f"Invalid S3 path format: {s3_path}")
    return parts[0], parts[1]


def s3_object_exists(s3_path: str) -> bool:
    from botocore.exceptions import ClientError

    bucket, key = _parse_s3_path_components(s3_path)
    try:
        s3_client.head_object(Bucket=bucket, Key=key)
        return True
    except ClientError:
        return False


@retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=4, max=10))
def _put_bytes(body: bytes, bucket: str, key: str, content_type: str) -> None:
    s3_client.put_object(Bucket=bucket, Key=key, Body=body, ContentType=content_type)


def save_to_s3_parquet(df: pd.DataFrame, s3_path: str, logger: logging.Logger) -> None:
    """Write a DataFrame as a single parquet object.

    List columns (contributing registration ids) are kept as parquet lists.
    """
    bucket, key = _parse_s3_path_components(s3_path)
    buffer = io.BytesIO()
    df.to_parquet(buffer, index=False, engine="pyarrow")
    buffer.seek(0)
    try:
        _upload_fileobj(buffer, bucket, key)
    except Exception as e:
        logger.error(f"✗ Error saving parquet file to {s3_path}: {e}")
        raise
    logger.info(f"✓ Saved {len(df):,} rows to {s3_path}")


@retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=4, max=10))
def _upload_fileobj(buffer: io.BytesIO, bucket: str, key: str) -> None:
    buffer.seek(0)
    s3_client.upload_fileobj(buffer, bucket, key, Config=S3_TRANSFER_CONFIG)


def save_to_s3_json(data: Union[str, dict, list], s3_path: str, logger: Optional[logging.Logger] = None) -> None:
    """Save a report or state document (dict, list or JSON string)."""
    if isinstance(data, (dict, list)):
        data = json.dumps(convert_json_serializable(data), indent=2)
    elif not isinstance(data, str):
        raise ValueError("Data must be a JSON string, dict, or list")

    bucket, key = _parse_s3_path_components(s3_path)
    try:
        _put_bytes(data.encode("utf-8"), bucket, key, "application/json")
    except Exception as e:
        if logger:
            logger.error(f"✗ Error saving JSON file to {s3_path}: {e}")
        raise
    if logger:
        logger.info(f"✓ Saved JSON file to {s3_path}")


def load_from_s3_json(s3_path: str, logger: Optional[logging.Logger] = None) -> Union[dict, list]:
    bucket, key = _parse_s3_path_components(s3_path)
    response = s3_client.get_object(Bucket=bucket, Key=key)
    data = json.loads(response['Body'].read().decode('utf-8'))
    if logger:
        logger.info(f"✓ Loaded JSON from {s3_path}")
    return data


def save_to_s3_text(text: str, s3_path: str, logger: Optional[logging.Logger] = None) -> None:
    """Save a run log."""
    bucket, key = _parse_s3_path_components(s3_path)
    try:
        _put_bytes(text.encode('utf-8'), bucket, key, 'text/plain')
    except Exception as e:
        if logger:
            logger.error(f"✗ Error saving text file to {s3_path}: {e}")
        raise
    if logger:
        logger.info(f"✓ Saved text file to {s3_path}")


def get_output_paths(bucket: str, entity_id: str, prefix: Optional[str] = None) -> Dict[str, str]:
    """S3 locations of the reconciled records and the run report for one run."""
    from helpers_waitlist.constants import S3_OUTPUT_PREFIX

    base = f"s3://{bucket}/{prefix or S3_OUTPUT_PREFIX}/{entity_id}"
    return {
        "records_parquet": f"{base}/{RECORDS_OBJECT}",
        "report_json": f"{base}/{REPORT_OBJECT}",
    }


def upload_reconciliation_outputs(records: pd.DataFrame, report: Dict[str, Any], bucket: str, run_id: str,
                                  logger: logging.Logger, prefix: Optional[str] = None) -> Dict[str, str]:
    """Upload the exported records and the run report; returns their S3 paths."""
    paths = get_output_paths(bucket, run_id, prefix)
    save_to_s3_parquet(records, paths["records_parquet"], logger)
    save_to_s3_json(report, paths["report_json"], logger)
    return paths
