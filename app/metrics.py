from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP 5xx responses",
    ["method", "path", "status"],
)

SUBSCRIPTION_OPERATIONS = Counter(
    "subscription_operations_total",
    "Subscription lifecycle operations by outcome",
    ["operation", "outcome"],
)
INVOICES_GENERATED = Counter(
    "subscription_invoices_generated_total",
    "Invoices produced by the billing sweep",
    ["currency"],
)
PAYMENT_ATTEMPTS = Counter(
    "subscription_payment_attempts_total",
    "Payment attempts by outcome",
    ["outcome"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def count_operation(operation: str, outcome: str) -> None:
    SUBSCRIPTION_OPERATIONS.labels(operation=operation, outcome=outcome).inc()
