"""
Auto-Heal - reconciliation and command-dispatch engine for Kubernetes fleets.

Turns detected problems (anomalies, security threats, pod observations) into
policy-gated remediation commands, audits every attempt, and hands commands
to the in-cluster executor agent through a durable queue with retries.
"""

__version__ = "1.0.0"
