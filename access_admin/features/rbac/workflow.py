"""
Guided bulk role-assignment workflow.

Five stages, driven by a single stage variable and a transition table:

    select-users -> select-roles -> review -> assign -> complete

``review`` may step back to either selection stage; ``assign`` and ``complete``
never go back. ``complete`` is left only through ``reset()``.
"""
import asyncio
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from ulid import ULID

from access_admin.features.rbac.assignments import AssignmentEngine
from access_admin.features.rbac.authority import AuthorityClient
from access_admin.features.rbac.exceptions import (
    AssignmentError,
    FetchError,
    InvalidTransition,
    StaleResultIgnored,
)
from access_admin.features.rbac.schemas import (
    AssignmentPlan,
    AssignmentValidationResult,
    ExecutionResult,
    ExecutionSummary,
    Role,
    User,
)
from access_admin.utils import get_logger


log = get_logger(__name__)


class WorkflowStage(str, Enum):
    SELECT_USERS = "select-users"
    SELECT_ROLES = "select-roles"
    REVIEW = "review"
    ASSIGN = "assign"
    COMPLETE = "complete"


class WorkflowEvent(str, Enum):
    NEXT = "next"
    PREVIOUS = "previous"
    EDIT_USERS = "edit-users"
    EDIT_ROLES = "edit-roles"
    EXECUTED = "executed"
    RESET = "reset"


TRANSITIONS: Dict[tuple, WorkflowStage] = {
    (WorkflowStage.SELECT_USERS, WorkflowEvent.NEXT): WorkflowStage.SELECT_ROLES,
    (WorkflowStage.SELECT_ROLES, WorkflowEvent.NEXT): WorkflowStage.REVIEW,
    (WorkflowStage.REVIEW, WorkflowEvent.NEXT): WorkflowStage.ASSIGN,
    (WorkflowStage.SELECT_ROLES, WorkflowEvent.PREVIOUS): WorkflowStage.SELECT_USERS,
    (WorkflowStage.REVIEW, WorkflowEvent.PREVIOUS): WorkflowStage.SELECT_ROLES,
    (WorkflowStage.SELECT_ROLES, WorkflowEvent.EDIT_USERS): WorkflowStage.SELECT_USERS,
    (WorkflowStage.REVIEW, WorkflowEvent.EDIT_USERS): WorkflowStage.SELECT_USERS,
    (WorkflowStage.REVIEW, WorkflowEvent.EDIT_ROLES): WorkflowStage.SELECT_ROLES,
    (WorkflowStage.ASSIGN, WorkflowEvent.EXECUTED): WorkflowStage.COMPLETE,
}


def transition(stage: WorkflowStage, event: WorkflowEvent) -> WorkflowStage:
    """Next stage for ``event``; ``reset`` is legal from every stage."""
    if event == WorkflowEvent.RESET:
        return WorkflowStage.SELECT_USERS
    try:
        return TRANSITIONS[(stage, event)]
    except KeyError:
        raise InvalidTransition(f"Cannot {event.value} from stage {stage.value}") from None


class AssignmentWorkflow:
    """
    One run of the guided assignment process.

    Plans, validation results and execution results are local to the run and
    discarded on reset; the workflow only reads the cache (through the engine)
    and triggers refreshes by assigning roles.
    """

    def __init__(
        self,
        engine: AssignmentEngine,
        *,
        users: Iterable[User] = (),
        roles: Iterable[Role] = (),
        workflow_id: Optional[str] = None,
    ):
        self.id = workflow_id or str(ULID())
        self.engine = engine
        self.users: List[User] = list(users)
        self.roles: List[Role] = list(roles)
        self.stage = WorkflowStage.SELECT_USERS
        self.selected_users: List[str] = []
        self.selected_roles: List[int] = []
        self.reason = ""
        self.plans: List[AssignmentPlan] = []
        self.validation_results: Dict[str, AssignmentValidationResult] = {}
        self.execution_results: List[ExecutionResult] = []
        self.executing = False
        # Incremented on reset; async work started in an older run drops its results.
        self._run = 0
        self._closed = False

    @property
    def project_hash(self) -> str:
        return self.engine.project_hash

    @property
    def available_users(self) -> List[User]:
        return [u for u in self.users if u.user_hash and u.user_type != "root"]

    @property
    def available_roles(self) -> List[Role]:
        return [r for r in self.roles if r.is_active]

    @property
    def validation_scope(self) -> str:
        """Key of this run's validations in the engine's dry-run cache."""
        return f"{self.id}:{self._run}"

    def _interested(self, run: int) -> bool:
        if self._closed or run != self._run:
            log.debug("%s", StaleResultIgnored(f"Workflow {self.id} run {run} no longer observed"))
            return False
        return True

    def _fire(self, event: WorkflowEvent) -> None:
        previous = self.stage
        self.stage = transition(self.stage, event)
        log.info("Workflow %s: %s -> %s", self.id, previous.value, self.stage.value)

    def _require(self, *stages: WorkflowStage) -> None:
        if self.stage not in stages:
            allowed = ", ".join(s.value for s in stages)
            raise InvalidTransition(f"Operation requires stage {allowed}, workflow is in {self.stage.value}")

    async def load_reference_data(self, authority: AuthorityClient) -> None:
        """Fetch users and project roles used for plan generation."""
        run = self._run
        users, roles = await asyncio.gather(
            authority.fetch_users(),
            authority.fetch_roles(self.project_hash),
        )
        if self._interested(run):
            self.users = users
            self.roles = roles

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_users(self, user_hashes: Iterable[str]) -> None:
        self._require(WorkflowStage.SELECT_USERS)
        self.selected_users = list(dict.fromkeys(h for h in user_hashes if h))

    def toggle_user(self, user_hash: str) -> None:
        self._require(WorkflowStage.SELECT_USERS)
        if user_hash in self.selected_users:
            self.selected_users = [h for h in self.selected_users if h != user_hash]
        else:
            self.selected_users = [*self.selected_users, user_hash]

    def select_roles(self, role_ids: Iterable[int]) -> None:
        self._require(WorkflowStage.SELECT_ROLES)
        self.selected_roles = list(dict.fromkeys(role_ids))

    def toggle_role(self, role_id: int) -> None:
        self._require(WorkflowStage.SELECT_ROLES)
        if role_id in self.selected_roles:
            self.selected_roles = [r for r in self.selected_roles if r != role_id]
        else:
            self.selected_roles = [*self.selected_roles, role_id]

    def set_reason(self, reason: str) -> None:
        self._require(WorkflowStage.SELECT_USERS, WorkflowStage.SELECT_ROLES)
        self.reason = reason

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    @property
    def can_proceed(self) -> bool:
        if self.stage == WorkflowStage.SELECT_USERS:
            return len(self.selected_users) > 0
        if self.stage == WorkflowStage.SELECT_ROLES:
            return len(self.selected_roles) > 0
        if self.stage == WorkflowStage.REVIEW:
            # A plan that was never validated blocks the run.
            return len(self.plans) > 0 and all(
                self.validation_results.get(plan.user_hash) is not None
                and self.validation_results[plan.user_hash].is_valid
                for plan in self.plans
            )
        # assign -> complete is driven by execute_assignments, not by a guard.
        return False

    def go_next(self) -> bool:
        """Advance one stage if the guard allows it. Returns whether the stage changed."""
        if not self.can_proceed:
            return False
        self._fire(WorkflowEvent.NEXT)
        if self.stage == WorkflowStage.REVIEW:
            self._generate_plans()
        return True

    def go_previous(self) -> bool:
        if (self.stage, WorkflowEvent.PREVIOUS) not in TRANSITIONS:
            return False
        self._fire(WorkflowEvent.PREVIOUS)
        return True

    def edit_users(self) -> None:
        """Jump from review (or role selection) back to user selection."""
        self._fire(WorkflowEvent.EDIT_USERS)

    def edit_roles(self) -> None:
        self._fire(WorkflowEvent.EDIT_ROLES)

    def reset(self) -> None:
        """Discard everything this run produced and start over."""
        self.engine.clear_validation_results(self.validation_scope)
        self._run += 1
        self._fire(WorkflowEvent.RESET)
        self.selected_users = []
        self.selected_roles = []
        self.reason = ""
        self.plans = []
        self.validation_results = {}
        self.execution_results = []
        self.executing = False

    def _generate_plans(self) -> None:
        usernames = {u.user_hash: u.username for u in self.available_users}
        role_names = {r.id: r.name for r in self.available_roles}
        names = [role_names[role_id] for role_id in self.selected_roles if role_id in role_names]
        self.plans = [
            AssignmentPlan(
                user_hash=user_hash,
                username=usernames.get(user_hash) or "Unknown User",
                role_ids=list(self.selected_roles),
                role_names=list(names),
                reason=self.reason or None,
            )
            for user_hash in self.selected_users
        ]
        self.validation_results = {}
        self.engine.clear_validation_results(self.validation_scope)

    # ------------------------------------------------------------------
    # Validation and execution
    # ------------------------------------------------------------------

    async def validate_plans(self) -> Dict[str, AssignmentValidationResult]:
        """Dry-run every plan. A failed validation call counts as an invalid plan."""
        self._require(WorkflowStage.REVIEW)
        run, scope = self._run, self.validation_scope
        results: Dict[str, AssignmentValidationResult] = {}
        for plan in list(self.plans):
            try:
                results[plan.user_hash] = await self.engine.validate_assignment(
                    plan.user_hash, plan.role_ids, scope=scope
                )
            except FetchError as e:
                results[plan.user_hash] = AssignmentValidationResult(
                    is_valid=False, warnings=[f"Validation failed: {e.message}"]
                )
            if not self._interested(run):
                self.engine.clear_validation_results(scope)
                return results
        self.validation_results = results
        return results

    async def execute_assignments(self) -> List[ExecutionResult]:
        """
        Assign every (user, role) pair of every plan, one call at a time.

        A failed pair is recorded and the loop moves on. The workflow reaches
        ``complete`` once every pair has been attempted.
        """
        self._require(WorkflowStage.ASSIGN)
        if self.executing:
            raise InvalidTransition(f"Workflow {self.id} is already executing")
        run = self._run
        self.executing = True
        self.execution_results = []
        try:
            for plan in list(self.plans):
                for role_id in plan.role_ids:
                    try:
                        assignment = await self.engine.assign_user_to_role(plan.user_hash, role_id, plan.reason)
                        outcome = ExecutionResult(
                            user_hash=plan.user_hash, role_id=role_id, success=True, assignment=assignment
                        )
                    except AssignmentError as e:
                        outcome = ExecutionResult(
                            user_hash=plan.user_hash, role_id=role_id, success=False, error=e.message
                        )
                    if not self._interested(run):
                        return []
                    self.execution_results.append(outcome)
        finally:
            if self._run == run and not self._closed:
                self.executing = False
                self._fire(WorkflowEvent.EXECUTED)
        summary = self.summary()
        log.info(
            "Workflow %s finished: %d succeeded, %d failed", self.id, summary.succeeded, summary.failed
        )
        return list(self.execution_results)

    def summary(self) -> ExecutionSummary:
        succeeded = sum(1 for r in self.execution_results if r.success)
        return ExecutionSummary(
            total=len(self.execution_results),
            succeeded=succeeded,
            failed=len(self.execution_results) - succeeded,
        )

    def close(self) -> None:
        self._closed = True
        self.engine.clear_validation_results(self.validation_scope)
