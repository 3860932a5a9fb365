"""
Pipeline utilities and pipeline state tracking merged into one module.

This file contains the multiprocessing helpers used by the per-patient
episode steps and the PipelineState class that records completed and failed
steps for resume and skip functionality.
"""

import os
import sys
import json
import logging
import multiprocessing as mp
from datetime import datetime, timezone
from concurrent.futures import ProcessPoolExecutor
from typing import Any, Callable, Dict, List, Optional

# Set root of project
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if project_root not in sys.path:
    sys.path.append(project_root)

from helpers_waitlist.constants import DEFAULT_OUTPUTS_DIR

STATE_PREFIX = "waitlist-pipeline-status"

_module_logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_multiprocessing_context():
    """
    Get the appropriate multiprocessing context.
    Returns (context, method_name).
    """
    mp_start_method = os.getenv('WAITLIST_MP_START_METHOD', '').lower()
    if mp_start_method in ('fork', 'spawn', 'forkserver'):
        try:
            return mp.get_context(mp_start_method), mp_start_method
        except (ValueError, RuntimeError) as e:
            _module_logger.warning(f"⚠️ Requested start method '{mp_start_method}' not available: {e}, "
                                   f"falling back to 'spawn'")
            return mp.get_context('spawn'), 'spawn'

    return mp.get_context('spawn'), 'spawn'


def get_max_workers() -> int:
    """Get worker count from environment, default to 1 (no process pool)."""
    try:
        return max(1, int(os.getenv('WAITLIST_MAX_WORKERS', '1')))
    except ValueError:
        return 1


def map_patient_partitions(worker: Callable, partitions: List[Any], max_workers: int = 1,
                           logger: Optional[logging.Logger] = None) -> List[Any]:
    """Apply worker to every patient partition, in order.

    With max_workers > 1 the partitions are dispatched to a ProcessPoolExecutor
    built on get_multiprocessing_context(); worker must be a module-level
    function. Each partition is handled as one unit by a single worker.
    """
    logger = logger or _module_logger
    if max_workers <= 1 or len(partitions) < 2:
        return [worker(partition) for partition in partitions]

    ctx, method = get_multiprocessing_context()
    workers = min(max_workers, len(partitions))
    chunksize = max(1, len(partitions) // (workers * 4))
    logger.info(f"→ [WORKERS] Dispatching {len(partitions):,} patient partitions to {workers} workers "
                f"(start method: {method})")
    with ProcessPoolExecutor(max_workers=workers, mp_context=ctx) as executor:
        return list(executor.map(worker, partitions, chunksize=chunksize))


# ----------------------------- pipeline state classes -----------------------------


class PipelineState:
    """Track pipeline execution state for resume and skip functionality.

    State lives in a local JSON file under the outputs directory. When a
    bucket is given every save is mirrored to
    s3://<bucket>/waitlist-pipeline-status/<pipeline>/<entity>/state.json.
    """

    def __init__(self, pipeline_name: str, entity_id: str, logger: Optional[logging.Logger] = None,
                 state_dir: Optional[str] = None, bucket: Optional[str] = None):
        self.pipeline_name = pipeline_name
        self.entity_id = entity_id.replace('/', '_')  # S3 safe
        self.logger = logger or logging.getLogger(__name__)
        self.bucket = bucket or None
        base_dir = state_dir or os.path.join(DEFAULT_OUTPUTS_DIR, 'pipeline_state')
        self.state_path = os.path.join(base_dir, pipeline_name, self.entity_id, 'state.json')
        self.state_key = f"{STATE_PREFIX}/{pipeline_name}/{self.entity_id}/state.json"
        self.state = self._load_state()

    def _fresh_state(self) -> Dict[str, Any]:
        return {
            'pipeline_name': self.pipeline_name,
            'entity_id': self.entity_id,
            'created_at': _now(),
            'updated_at': _now(),
            'status': 'running',
            'completed_steps': [],
            'failed_steps': [],
            'metadata': {}
        }

    def _load_state(self) -> Dict[str, Any]:
        if os.path.exists(self.state_path):
            try:
                with open(self.state_path, 'r', encoding='utf-8') as f:
                    state = json.load(f)
                self.logger.info(f"📂 Loaded pipeline state: {len(state.get('completed_steps', []))} steps completed")
                return state
            except (OSError, ValueError) as e:
                self.logger.warning(f"⚠️ Could not load state from {self.state_path}: {e}, starting fresh")
                return self._fresh_state()

        if self.bucket:
            from botocore.exceptions import ClientError
            from helpers_waitlist.common_imports import s3_client
            try:
                response = s3_client.get_object(Bucket=self.bucket, Key=self.state_key)
                state = json.loads(response['Body'].read().decode('utf-8'))
                self.logger.info(f"📂 Loaded pipeline state from S3: "
                                 f"{len(state.get('completed_steps', []))} steps completed")
                return state
            except ClientError as e:
                self.logger.info(f"📂 No existing state found in S3 ({e.response.get('Error', {}).get('Code')}), "
                                 f"starting fresh")

        self.logger.info("📂 No existing state found, starting fresh")
        return self._fresh_state()

    def _save_state(self):
        self.state['updated_at'] = _now()
        body = json.dumps(self.state, indent=2, default=str)
        os.makedirs(os.path.dirname(os.path.abspath(self.state_path)), exist_ok=True)
        with open(self.state_path, 'w', encoding='utf-8') as f:
            f.write(body)
        self.logger.debug(f"💾 Saved pipeline state to {self.state_path}")

        if self.bucket:
            from helpers_waitlist.common_imports import s3_client
            try:
                s3_client.put_object(
                    Bucket=self.bucket,
                    Key=self.state_key,
                    Body=body,
                    ContentType='application/json'
                )
                self.logger.debug(f"💾 Saved pipeline state to s3://{self.bucket}/{self.state_key}")
            except Exception as e:
                self.logger.error(f"❌ Failed to save state to S3: {e}")

    def is_step_completed(self, step_name: str) -> bool:
        completed = any(s['step_name'] == step_name for s in self.state['completed_steps'])
        if completed:
            self.logger.info(f"⏭️  Step '{step_name}' already completed")
        return completed

    def mark_step_completed(self, step_name: str, metadata: Optional[Dict] = None):
        # A re-run of a step replaces its earlier entry
        self.state['completed_steps'] = [s for s in self.state['completed_steps'] if s['step_name'] != step_name]
        self.state['completed_steps'].append({
            'step_name': step_name,
            'completed_at': _now(),
            'metadata': metadata or {}
        })
        self._save_state()
        self.logger.info(f"✅ Marked step '{step_name}' as completed")

    def get_step_metadata(self, step_name: str) -> Dict[str, Any]:
        for step in reversed(self.state['completed_steps']):
            if step['step_name'] == step_name:
                return step.get('metadata') or {}
        return {}

    def mark_step_failed(self, step_name: str, error: str):
        self.state['failed_steps'].append({
            'step_name': step_name,
            'failed_at': _now(),
            'error': str(error)
        })
        self.state['status'] = 'failed'
        self._save_state()
        self.logger.error(f"❌ Marked step '{step_name}' as failed: {error}")

    def mark_pipeline_completed(self, metadata: Optional[Dict] = None):
        self.state['status'] = 'completed'
        self.state['completed_at'] = _now()
        if metadata:
            self.state['metadata'].update(metadata)
        self._save_state()
        self.logger.info(f"🎉 Pipeline '{self.pipeline_name}' completed for {self.entity_id}")

    def mark_pipeline_failed(self, error: str):
        self.state['status'] = 'failed'
        self.state['failed_steps'].append({'step_name': 'pipeline', 'failed_at': _now(), 'error': str(error)})
        self._save_state()

    def get_progress(self) -> Dict[str, Any]:
        return {
            'pipeline_name': self.pipeline_name,
            'entity_id': self.entity_id,
            'status': self.state['status'],
            'completed_steps': len(self.state['completed_steps']),
            'failed_steps': len(self.state['failed_steps']),
            'step_names': [s['step_name'] for s in self.state['completed_steps']]
        }

    def reset(self):
        self.state = self._fresh_state()
        self._save_state()
        self.logger.warning(f"🔄 Reset pipeline state for {self.entity_id}")
