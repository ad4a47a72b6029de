"""
In-process registry of per-project RBAC state.

One effective permission cache and one assignment engine per project hash,
plus the workflows currently being driven by the UI. Closing the registry
stops every auto-refresh timer and withdraws interest from in-flight calls.
"""
from dataclasses import dataclass
from typing import Dict, Optional

from access_admin.core import config
from access_admin.features.rbac.assignments import AssignmentEngine
from access_admin.features.rbac.authority import AuthorityClient
from access_admin.features.rbac.cache import EffectivePermissionCache
from access_admin.features.rbac.workflow import AssignmentWorkflow
from access_admin.utils import get_logger


log = get_logger(__name__)


@dataclass
class ProjectAdmin:
    cache: EffectivePermissionCache
    engine: AssignmentEngine


class AdminRegistry:
    def __init__(self, authority: AuthorityClient, *, auto_refresh: Optional[bool] = None):
        self.authority = authority
        self.auto_refresh = config.AUTO_REFRESH_ENABLED if auto_refresh is None else auto_refresh
        self._projects: Dict[str, ProjectAdmin] = {}
        self._workflows: Dict[str, AssignmentWorkflow] = {}

    def project(self, project_hash: str) -> ProjectAdmin:
        """Get or create the state for a project."""
        admin = self._projects.get(project_hash)
        if admin is None:
            cache = EffectivePermissionCache(self.authority, project_hash)
            engine = AssignmentEngine(self.authority, cache)
            admin = ProjectAdmin(cache=cache, engine=engine)
            self._projects[project_hash] = admin
            if self.auto_refresh:
                cache.start_auto_refresh()
                engine.start_auto_refresh()
            log.info("Opened RBAC state for project %s", project_hash)
        return admin

    async def close_project(self, project_hash: str) -> None:
        admin = self._projects.pop(project_hash, None)
        if admin is None:
            return
        for workflow_id, workflow in list(self._workflows.items()):
            if workflow.project_hash == project_hash:
                self.discard_workflow(workflow_id)
        await admin.engine.close()
        await admin.cache.close()
        log.info("Closed RBAC state for project %s", project_hash)

    def create_workflow(self, project_hash: str) -> AssignmentWorkflow:
        workflow = AssignmentWorkflow(self.project(project_hash).engine)
        self._workflows[workflow.id] = workflow
        return workflow

    def get_workflow(self, workflow_id: str) -> Optional[AssignmentWorkflow]:
        return self._workflows.get(workflow_id)

    def discard_workflow(self, workflow_id: str) -> None:
        workflow = self._workflows.pop(workflow_id, None)
        if workflow is not None:
            workflow.close()

    async def close_all(self) -> None:
        for project_hash in list(self._projects):
            await self.close_project(project_hash)
        for workflow_id in list(self._workflows):
            self.discard_workflow(workflow_id)
