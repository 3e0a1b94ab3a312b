from .http_transport import DeliveryOutcome, DeliveryStatus, HttpTransport, classify_status

__all__ = ["DeliveryOutcome", "DeliveryStatus", "HttpTransport", "classify_status"]
