"""
Audit logging for pipeline runs.

Appends one JSON line per run event so that every deployment, rollback and
manual intervention point can be reconstructed after the fact.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Audit log location; replaced by configure_audit_log() at startup
AUDIT_LOG_PATH = Path("/var/log/push-deployer/audit.jsonl")


def configure_audit_log(path: str) -> None:
    """Point the audit trail at a different file."""
    global AUDIT_LOG_PATH
    AUDIT_LOG_PATH = Path(path)


def audit_pipeline_event(
    action: str,
    run_id: Optional[str] = None,
    revision: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    success: Optional[bool] = None,
    actor: Optional[str] = None,
) -> None:
    """
    Log a pipeline event for audit purposes.

    Args:
        action: What happened (run_started, deployed, rolled_back, aborted, fatal)
        run_id: Pipeline run identifier
        revision: Revision being deployed
        details: Additional details about the event
        success: Whether the event represents a success
        actor: Who triggered it (webhook, cli)
    """
    try:
        AUDIT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)

        audit_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "run_id": run_id,
            "revision": revision,
            "actor": actor or "system",
            "details": details or {},
        }

        if success is not None:
            audit_entry["success"] = success

        with open(AUDIT_LOG_PATH, "a") as f:
            f.write(json.dumps(audit_entry) + "\n")

        logger.debug(f"Audit: {action} run {run_id} ({revision})")

    except OSError as e:
        # Don't fail a deployment because the audit trail is unwritable
        logger.error(f"Failed to write audit log: {e}")
