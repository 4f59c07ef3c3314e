"""
Two-Stage Validation Pipeline

DESIGN DECISION: Every local write is validated in two distinct stages
before anything touches the store or the queue:

STAGE 1 - SCHEMA VALIDATION:
- Required field presence
- Non-empty identifiers
- At least two postings on a transaction

STAGE 2 - SEMANTIC VALIDATION:
- Double-entry balance (postings sum to zero within tolerance)
- Account references resolvable in the local store
- Unit references resolvable in the local store
- Future-dated transactions (warning only)

WHY TWO STAGES:
1. Separation of concerns (structural vs logical)
2. Better error messages (know exactly what kind of issue)
3. Can skip stage 2 if stage 1 fails
4. Stage 2 needs access to the store for reference checks

IMPORTANT: Validation NEVER silently fixes issues.
A write with errors is refused and nothing is queued.
"""

from datetime import date, timedelta
from typing import Optional

from ledgersync.config import get_settings
from ledgersync.models.ledger import (
    Account,
    LedgerEntity,
    Tag,
    Transaction,
    Unit,
)
from ledgersync.models.validation import ValidationIssue, ValidationResult
from ledgersync.services.storage import LedgerStoreInterface


class LedgerValidator:
    """
    Validates ledger entities through a two-stage pipeline.

    Stage 1: Schema validation (can run without a store)
    Stage 2: Semantic validation (uses the store for reference checks)
    """

    def __init__(
        self,
        store: Optional[LedgerStoreInterface] = None,
        balance_tolerance: Optional[float] = None,
    ):
        """
        Initialize validator.

        Args:
            store: Local store used to resolve account and unit references.
                   If None, reference checks are skipped.
            balance_tolerance: Largest absolute posting sum still
                   considered balanced. Defaults to the sync settings.
        """
        self._store = store
        if balance_tolerance is None:
            balance_tolerance = get_settings().sync.balance_tolerance
        self._tolerance = balance_tolerance

    def _validate_schema(
        self,
        entity: LedgerEntity,
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 1: Schema validation.

        Pydantic already guarantees types; this stage checks the shape
        rules the models cannot express on their own.

        Returns: (is_valid, list_of_issues)
        """
        issues = []

        if isinstance(entity, Transaction):
            if not entity.description.strip():
                issues.append(ValidationIssue(
                    field="description",
                    issue_type="missing",
                    message="Transaction description is required",
                    severity="error",
                ))
            if len(entity.postings) < 2:
                issues.append(ValidationIssue(
                    field="postings",
                    issue_type="too_few",
                    message="A transaction needs at least two postings",
                    severity="error",
                    suggested_fix="Add the counterpart account posting",
                ))
            seen_ids = set()
            for index, posting in enumerate(entity.postings):
                if not posting.account_id.strip():
                    issues.append(ValidationIssue(
                        field=f"postings[{index}].account_id",
                        issue_type="missing",
                        message="Posting has no account",
                        severity="error",
                    ))
                if posting.id in seen_ids:
                    issues.append(ValidationIssue(
                        field=f"postings[{index}].id",
                        issue_type="duplicate",
                        message=f"Posting id {posting.id} is used twice",
                        severity="error",
                    ))
                seen_ids.add(posting.id)

        elif isinstance(entity, Account):
            if entity.parent_id == entity.id:
                issues.append(ValidationIssue(
                    field="parent_id",
                    issue_type="invalid_value",
                    message="An account cannot be its own parent",
                    severity="error",
                ))

        elif isinstance(entity, (Unit, Tag)):
            if not entity.name.strip():
                issues.append(ValidationIssue(
                    field="name",
                    issue_type="missing",
                    message=f"{entity.entity_type.value.title()} name is required",
                    severity="error",
                ))

        # Schema is valid if no errors (warnings are okay)
        is_valid = not any(issue.severity == "error" for issue in issues)

        return is_valid, issues

    def _validate_semantic(
        self,
        entity: LedgerEntity,
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 2: Semantic validation.

        Returns: (is_valid, list_of_issues)
        """
        issues = []

        if isinstance(entity, Transaction):
            if not entity.is_balanced(self._tolerance):
                issues.append(ValidationIssue(
                    field="postings",
                    issue_type="unbalanced",
                    message=f"Postings sum to {entity.posting_total}, not zero",
                    severity="error",
                    suggested_fix="Adjust the amounts so debits equal credits",
                ))

            if entity.date > date.today() + timedelta(days=1):
                issues.append(ValidationIssue(
                    field="date",
                    issue_type="future_date",
                    message=f"Transaction date ({entity.date}) is in the future",
                    severity="warning",
                ))

            if self._store is not None:
                issues.extend(self._check_references(entity))

        elif isinstance(entity, Account) and self._store is not None:
            if entity.parent_id and self._store.get_account(entity.parent_id) is None:
                issues.append(ValidationIssue(
                    field="parent_id",
                    issue_type="unknown_reference",
                    message=f"Parent account {entity.parent_id} does not exist locally",
                    severity="warning",
                ))

        # Semantic validation passes if no errors
        is_valid = not any(issue.severity == "error" for issue in issues)

        return is_valid, issues

    def _check_references(self, tx: Transaction) -> list[ValidationIssue]:
        """
        Check that postings point at known accounts and units.

        Accounts are not foreign keys, so a missing one is only a warning:
        it may exist remotely and arrive on the next pull.
        """
        issues = []
        for index, posting in enumerate(tx.postings):
            if self._store.get_account(posting.account_id) is None:
                issues.append(ValidationIssue(
                    field=f"postings[{index}].account_id",
                    issue_type="unknown_reference",
                    message=f"Account {posting.account_id} is not in the local ledger",
                    severity="warning",
                ))
            if posting.unit_code and self._store.get_unit(posting.unit_code) is None:
                issues.append(ValidationIssue(
                    field=f"postings[{index}].unit_code",
                    issue_type="unknown_reference",
                    message=f"Unit {posting.unit_code} is not in the local ledger",
                    severity="warning",
                ))
        return issues

    def validate(self, entity: LedgerEntity) -> ValidationResult:
        """
        Run full two-stage validation pipeline.

        Args:
            entity: The entity about to be written

        Returns:
            ValidationResult with all issues found
        """
        all_issues = []

        # Stage 1: Schema validation
        schema_valid, schema_issues = self._validate_schema(entity)
        all_issues.extend(schema_issues)

        # Only run stage 2 if stage 1 passes
        semantic_valid = False
        if schema_valid:
            semantic_valid, semantic_issues = self._validate_semantic(entity)
            all_issues.extend(semantic_issues)

        return ValidationResult(
            entity_type=entity.entity_type.value,
            entity_id=entity.entity_key,
            schema_valid=schema_valid,
            semantic_valid=semantic_valid,
            issues=all_issues,
        )

    def get_user_friendly_summary(
        self,
        result: ValidationResult,
    ) -> str:
        """
        Generate a user-friendly summary of validation results.
        """
        if result.is_valid and not result.warnings:
            return "All checks passed."

        lines = []

        if result.errors:
            lines.append("This entry cannot be saved:")
            for issue in result.errors:
                lines.append(f"   • {issue.message}")
                if issue.suggested_fix:
                    lines.append(f"     {issue.suggested_fix}")

        if result.warnings:
            if lines:
                lines.append("")
            lines.append("Please verify the following:")
            for warning in result.warnings:
                lines.append(f"   • {warning}")

        return "\n".join(lines)
