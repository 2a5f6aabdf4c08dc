"""
mkwebuser: provision isolated, quota-limited, sftp-only users on one host.

Layout:
- config: pydantic settings
- gateway: privileged command gateway (real host and simulated host)
- provisioning: planner, step executors, orchestration engine, journal
- cli: the mkwebuser command
"""

__version__ = "0.2.0"
