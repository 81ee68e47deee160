# metrics.py
from prometheus_client import Counter, Histogram

ROUTE_REQUEST_COUNT = Counter("route_request_count", "Total number of requests per route", ["method", "endpoint"])
ROUTE_REQUEST_LATENCY = Histogram("route_request_latency_seconds", "Request latency in seconds per route",
                                  ["method", "endpoint"])

BOOKING_ATTEMPTS = Counter("booking_attempts_total", "Booking and reschedule attempts by outcome",
                           ["operation", "outcome"])
