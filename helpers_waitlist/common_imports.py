import sys
import os

# Set root of project (e.g., /home/analyst/waitlist-reconciliation)
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if project_root not in sys.path:
    sys.path.append(project_root)


# Third-party imports
import boto3
import certifi
from boto3.s3.transfer import TransferConfig
from botocore.config import Config


# AWS Configuration
AWS_REGION = os.environ.get("WAITLIST_AWS_REGION", "us-east-1")
S3_READ_TIMEOUT = int(os.environ.get("WAITLIST_S3_READ_TIMEOUT", "30"))

# Registry-sized record exports can exceed one part; keep parts at 16 MB
S3_TRANSFER_CONFIG = TransferConfig(multipart_threshold=16 * 1024 * 1024, multipart_chunksize=16 * 1024 * 1024)

# Client shared by s3_utils, logging_utils and PipelineState
s3_client = boto3.client(
    "s3",
    config=Config(
        retries={'max_attempts': 3, 'mode': 'adaptive'},
        connect_timeout=5,
        read_timeout=S3_READ_TIMEOUT,
        region_name=AWS_REGION,
    ),
    verify=certifi.where(),
)

# Note: Logging utilities live in helpers_waitlist.logging_utils to avoid circular imports
