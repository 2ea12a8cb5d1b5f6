"""
Consent policy tables
Field sensitivity catalog, duration and permission-count multipliers,
service risk weights and the rules that consume them.
"""

from typing import Dict, List, Iterable, NamedTuple, Optional

from .models import DataField, DataFieldCategory, RiskCategory, RiskLevel


# =============================================================================
# FIELD CATALOG
# =============================================================================

def _field(name: str, label: str, category: DataFieldCategory, weight: int,
           description: str) -> DataField:
    return DataField(
        name=name,
        label=label,
        category=category,
        sensitivity_weight=weight,
        description=description,
    )


DATA_FIELDS: Dict[str, DataField] = {
    f.name: f for f in (
        # Contact
        _field("email", "Email Address", DataFieldCategory.CONTACT, 5,
               "Student email address"),
        _field("phone", "Phone Number", DataFieldCategory.CONTACT, 5,
               "Student phone number"),
        _field("address", "Physical Address", DataFieldCategory.CONTACT, 8,
               "Student physical address"),
        # Academic
        _field("gpa", "Grade Point Average", DataFieldCategory.ACADEMIC, 10,
               "Current GPA"),
        _field("transcript", "Academic Transcript", DataFieldCategory.ACADEMIC, 15,
               "Full academic transcript"),
        _field("courses", "Course Enrollment", DataFieldCategory.ACADEMIC, 8,
               "Current course enrollment"),
        _field("major", "Major/Program", DataFieldCategory.ACADEMIC, 5,
               "Academic major or program"),
        _field("grades", "Course Grades", DataFieldCategory.ACADEMIC, 12,
               "Individual course grades"),
        # Financial
        _field("financial_aid", "Financial Aid Status", DataFieldCategory.FINANCIAL, 20,
               "Financial aid information"),
        _field("payment_history", "Payment History", DataFieldCategory.FINANCIAL, 25,
               "Tuition payment history"),
        _field("scholarship", "Scholarship Information", DataFieldCategory.FINANCIAL, 18,
               "Scholarship awards and status"),
        _field("account_balance", "Account Balance", DataFieldCategory.FINANCIAL, 22,
               "Current account balance"),
        # Personal
        _field("full_name", "Full Name", DataFieldCategory.PERSONAL, 3,
               "Student full legal name"),
        _field("date_of_birth", "Date of Birth", DataFieldCategory.PERSONAL, 10,
               "Student date of birth"),
        _field("emergency_contact", "Emergency Contact", DataFieldCategory.PERSONAL, 12,
               "Emergency contact information"),
        # Identity
        _field("student_id", "Student ID", DataFieldCategory.IDENTITY, 15,
               "University student ID number"),
        _field("ssn", "Social Security Number", DataFieldCategory.IDENTITY, 50,
               "Social Security Number (highly sensitive)"),
        _field("passport", "Passport Information", DataFieldCategory.IDENTITY, 45,
               "Passport number and details"),
        # Behavioral
        _field("login_history", "Login History", DataFieldCategory.BEHAVIORAL, 10,
               "System login history"),
        _field("library_usage", "Library Usage", DataFieldCategory.BEHAVIORAL, 5,
               "Library access and borrowing history"),
        _field("campus_access", "Campus Access Logs", DataFieldCategory.BEHAVIORAL, 15,
               "Physical campus access records"),
    )
}

# Fields that always warrant a second look before approval
HIGH_SENSITIVITY_FIELDS = frozenset({
    "ssn", "passport", "financial_aid", "payment_history", "account_balance",
})

FIELD_SENSITIVITY_CAP = 50


def get_field_definition(name: str) -> Optional[DataField]:
    return DATA_FIELDS.get(name)


def get_field_definitions(names: Iterable[str]) -> List[DataField]:
    """Catalog entries for the given names, unknown names skipped"""
    return [DATA_FIELDS[n] for n in names if n in DATA_FIELDS]


def get_all_field_names() -> List[str]:
    return list(DATA_FIELDS)


def calculate_field_sensitivity(names: Iterable[str]) -> int:
    return sum(DATA_FIELDS[n].sensitivity_weight for n in names if n in DATA_FIELDS)


def has_high_sensitivity_field(names: Iterable[str]) -> bool:
    return any(n in HIGH_SENSITIVITY_FIELDS for n in names)


def fields_in_category(names: Iterable[str], category: DataFieldCategory) -> List[str]:
    return [f.name for f in get_field_definitions(names) if f.category == category]


# =============================================================================
# DURATION
# =============================================================================

class DurationTier(NamedTuple):
    max_days: float
    multiplier: float
    label: str


DURATION_TIERS: List[DurationTier] = [
    DurationTier(1, 0.8, "One-time (1 day)"),
    DurationTier(7, 1.0, "Short-term (≤7 days)"),
    DurationTier(30, 1.2, "Medium-term (≤30 days)"),
    DurationTier(90, 1.4, "Quarterly (≤90 days)"),
    DurationTier(180, 1.6, "Semester (≤180 days)"),
    DurationTier(365, 1.8, "Annual (≤365 days)"),
    DurationTier(float("inf"), 2.0, "Extended (>365 days)"),
]

DURATION_BASELINE = 0.8
DURATION_SCALE = 25


def get_duration_tier(days: int) -> DurationTier:
    for tier in DURATION_TIERS:
        if days <= tier.max_days:
            return tier
    return DURATION_TIERS[-1]


# =============================================================================
# SERVICE RISK
# =============================================================================

SERVICE_RISK_WEIGHTS: Dict[RiskCategory, float] = {
    RiskCategory.LOW: 1.0,
    RiskCategory.MEDIUM: 1.3,
    RiskCategory.HIGH: 1.6,
    RiskCategory.CRITICAL: 2.0,
}

SERVICE_RISK_SCALE = 20


# =============================================================================
# PERMISSION COUNT
# =============================================================================

class PermissionTier(NamedTuple):
    max_count: float
    multiplier: float


PERMISSION_COUNT_TIERS: List[PermissionTier] = [
    PermissionTier(3, 1.0),
    PermissionTier(5, 1.1),
    PermissionTier(10, 1.2),
    PermissionTier(20, 1.4),
    PermissionTier(float("inf"), 1.5),
]

PERMISSION_COUNT_SCALE = 15


def get_permission_count_multiplier(count: int) -> float:
    for tier in PERMISSION_COUNT_TIERS:
        if count <= tier.max_count:
            return tier.multiplier
    return PERMISSION_COUNT_TIERS[-1].multiplier


# =============================================================================
# STUDENT RISK
# =============================================================================

STUDENT_RISK_CONTRIBUTIONS: Dict[RiskLevel, int] = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 5,
    RiskLevel.HIGH: 10,
    RiskLevel.CRITICAL: 15,
}

# Share of the combined multiplier's excess over 1.0 applied to the base score
COMPOUND_DAMPING = 0.3


# =============================================================================
# AUTO-APPROVAL & RISK EVENTS
# =============================================================================

MAX_AUTO_APPROVE_RISK_SCORE = 30
MAX_AUTO_APPROVE_DURATION = 7

HIGH_RISK_APPROVAL_IMPACT = -15
MEDIUM_RISK_APPROVAL_IMPACT = -5
HIGH_RISK_DENIAL_IMPACT = 10
LOW_RISK_DENIAL_IMPACT = 2
REVOCATION_IMPACT = 5

# Recommendations above this duration suggest shortening access
RECOMMENDED_MAX_DURATION = 30
LOW_RISK_NOTE_MAX_SCORE = 25
