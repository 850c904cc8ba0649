from src.monitoring.metrics import get_metrics, record_credential_event, record_request, record_upstream

__all__ = ["get_metrics", "record_credential_event", "record_request", "record_upstream"]
