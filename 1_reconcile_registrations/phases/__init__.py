"""
Modular pipeline phases for registration reconciliation.

Each phase is in its own file for better maintainability.
"""

from .phase1_data_preparation import (
    run_phase1_load_registrations,
    run_phase1_resolve_end_dates
)
from .phase2_registration_classification import run_phase2_classify_registrations
from .phase3_episode_processing import (
    run_phase3_group_episodes,
    run_phase3_collapse_episodes
)
from .phase4_finalization import run_phase4_merge_and_finalize

__all__ = [
    'run_phase1_load_registrations',
    'run_phase1_resolve_end_dates',
    'run_phase2_classify_registrations',
    'run_phase3_group_episodes',
    'run_phase3_collapse_episodes',
    'run_phase4_merge_and_finalize',
]
