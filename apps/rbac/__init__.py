"""
RBAC (Role-Based Access Control) application.

Provides tenant-scoped access control with:
- Global user identity shared across tenants
- Global role templates attached per membership
- Direct permission grants on memberships
- Grant-escalation policy switch
- Append-only audit logging
"""
