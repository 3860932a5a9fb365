# Environment-aware defaults
import os

# Default outputs directory for reconciliation artifacts. Can be overridden by
# setting WAITLIST_OUTPUTS_DIR (useful on EC2 or CI).
DEFAULT_OUTPUTS_DIR = os.environ.get(
    'WAITLIST_OUTPUTS_DIR', os.path.join('1_reconcile_registrations', 'outputs')
)

# Environment-driven run configuration (these mirror WAITLIST_* env vars).
# Use these constants throughout the codebase instead of calling os.getenv() everywhere.
S3_BUCKET = os.environ.get('WAITLIST_S3_BUCKET', '').strip()
S3_LOG_PREFIX = os.environ.get('WAITLIST_S3_LOG_PREFIX', 'build_logs').strip()
S3_OUTPUT_PREFIX = os.environ.get('WAITLIST_S3_OUTPUT_PREFIX', 'reconciled_registrations').strip()

WAITLIST_ORGAN = os.environ.get('WAITLIST_ORGAN', 'KI').strip() or None
WAITLIST_MIN_AGE = os.environ.get('WAITLIST_MIN_AGE', '18').strip()
WAITLIST_LIST_START = os.environ.get('WAITLIST_LIST_START', '').strip() or None
WAITLIST_LIST_END = os.environ.get('WAITLIST_LIST_END', '').strip() or None

# SRTR DON_TY codes
DECEASED_DONOR_CODE = os.environ.get('WAITLIST_DECEASED_DONOR_CODE', 'C').strip()
LIVING_DONOR_CODE = os.environ.get('WAITLIST_LIVING_DONOR_CODE', 'L').strip()

# ------------------------------------------------------------
# Canonical registration columns
# ------------------------------------------------------------

PATIENT_ID = 'patient_id'
REGISTRATION_ID = 'registration_id'
LIST_DATE = 'list_date'
REMOVAL_DATE = 'removal_date'
REMOVAL_CODE = 'removal_code'
LAST_ACTIVE_DATE = 'last_active_status_date'
LAST_INACTIVE_DATE = 'last_inactive_status_date'
TRANSPLANT_DATE = 'transplant_date'
DONOR_TYPE = 'donor_type'
DONOR_ID = 'donor_id'
ORGAN = 'organ'
AGE_AT_LISTING = 'age_at_listing'

# Derived columns
WAITLIST_END_DATE = 'waitlist_end_date'
NUM_LISTINGS = 'num_listings'
NUM_TRANSPLANT_DATES = 'num_transplant_dates'
LIST_TYPE = 'list_type'
EPISODE_NUMBER = 'episode_number'
MIN_LIST_DATE = 'min_list_date'
LAST_WAIT_DATE = 'last_wait_date'
WAIT_TIME = 'wait_time'
OUTCOME = 'outcome'
CONTRIBUTING_IDS = 'contributing_registration_ids'

REGISTRATION_DATE_COLUMNS = [
    LIST_DATE,
    REMOVAL_DATE,
    LAST_ACTIVE_DATE,
    LAST_INACTIVE_DATE,
    TRANSPLANT_DATE,
]

REQUIRED_REGISTRATION_COLUMNS = [
    PATIENT_ID,
    REGISTRATION_ID,
    LIST_DATE,
    REMOVAL_DATE,
    REMOVAL_CODE,
    LAST_ACTIVE_DATE,
    LAST_INACTIVE_DATE,
    TRANSPLANT_DATE,
    DONOR_TYPE,
    DONOR_ID,
]

# Optional columns only used by the population filter
FILTER_COLUMNS = [ORGAN, AGE_AT_LISTING]

# SRTR candidate file names -> canonical names
SRTR_COLUMN_MAP = {
    'PERS_ID': PATIENT_ID,
    'PX_ID': REGISTRATION_ID,
    'CAN_LISTING_DT': LIST_DATE,
    'CAN_REM_DT': REMOVAL_DATE,
    'CAN_REM_CD': REMOVAL_CODE,
    'CAN_LAST_ACT_STAT_DT': LAST_ACTIVE_DATE,
    'CAN_LAST_INACT_STAT_DT': LAST_INACTIVE_DATE,
    'REC_TX_DT': TRANSPLANT_DATE,
    'DON_TY': DONOR_TYPE,
    'DONOR_ID': DONOR_ID,
    'WL_ORG': ORGAN,
    'CAN_AGE_AT_LISTING': AGE_AT_LISTING,
}

# ------------------------------------------------------------
# Labels
# ------------------------------------------------------------

LIST_TYPE_SINGLE = 'single'
LIST_TYPE_CONCURRENT = 'concurrent'
LIST_TYPE_SEQUENTIAL = 'sequential'
LIST_TYPES = [LIST_TYPE_SINGLE, LIST_TYPE_SEQUENTIAL, LIST_TYPE_CONCURRENT]

OUTCOME_DDKT = 'DDKT'
OUTCOME_LDKT = 'LDKT'
OUTCOME_REMOVED = 'removed/died'
OUTCOME_CENSORED = 'censored'
OUTCOMES = [OUTCOME_DDKT, OUTCOME_LDKT, OUTCOME_REMOVED, OUTCOME_CENSORED]

# Canonical record layout handed to the reporting/export collaborator
CANONICAL_RECORD_COLUMNS = [
    PATIENT_ID,
    REGISTRATION_ID,
    MIN_LIST_DATE,
    LAST_WAIT_DATE,
    WAIT_TIME,
    OUTCOME,
    LIST_TYPE,
    EPISODE_NUMBER,
    NUM_LISTINGS,
    TRANSPLANT_DATE,
    DONOR_TYPE,
    DONOR_ID,
    REMOVAL_CODE,
    CONTRIBUTING_IDS,
]

# Identifier columns replaced by the pseudonymization step
IDENTIFIER_COLUMNS = [PATIENT_ID, REGISTRATION_ID, DONOR_ID]
