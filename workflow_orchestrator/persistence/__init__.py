from workflow_orchestrator.persistence.event_log import EventLog

__all__ = ["EventLog"]
