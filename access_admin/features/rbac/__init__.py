"""
RBAC administration feature module.

Aggregates effective permissions fetched from the permission authority, drives
single and bulk role assignment, and runs the guided bulk-assignment workflow.
"""
