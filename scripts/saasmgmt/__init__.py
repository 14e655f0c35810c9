"""SaaS management backend.

Stores encrypted per-company vendor credentials, connects them to AWS, Slack,
Zoom, GitHub, Google Workspace and Datadog, pulls users on a schedule, and
correlates identities across platforms by email (ghost users, security risk,
license waste).
"""
