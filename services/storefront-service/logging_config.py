"""Structured logging configuration."""
import logging
import sys
from pythonjsonlogger import jsonlogger
from opentelemetry import trace

from config import LOG_LEVEL, OTEL_ENABLED, OTEL_EXPORTER_OTLP_ENDPOINT, SERVICE_NAME

# The OTLP log exporter ships with the SDK extras only
try:
    from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
    from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
    from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
    from opentelemetry.sdk.resources import Resource
    OTLP_LOGGING_AVAILABLE = True
except ImportError:
    OTLP_LOGGING_AVAILABLE = False


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON log lines stamped with the service name and the active trace."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.update(_trace_fields())
        log_record['service'] = SERVICE_NAME
        if 'message' in log_record:
            log_record['msg'] = log_record.pop('message')


def _trace_fields() -> dict:
    """Ids of the current span, empty outside a trace."""
    ctx = trace.get_current_span().get_span_context()
    if not ctx.is_valid:
        return {}
    return {
        'trace_id': trace.format_trace_id(ctx.trace_id),
        'span_id': trace.format_span_id(ctx.span_id),
        'trace_flags': int(ctx.trace_flags),
    }


def _add_otlp_handler(root_logger: logging.Logger) -> None:
    """Ship log records to the OTLP collector."""
    try:
        resource = Resource.create({
            "service.name": SERVICE_NAME,
            "deployment.environment": "demo"
        })
        logger_provider = LoggerProvider(resource=resource)
        logger_provider.add_log_record_processor(
            BatchLogRecordProcessor(
                OTLPLogExporter(endpoint=OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True)
            )
        )

        from opentelemetry._logs import set_logger_provider
        set_logger_provider(logger_provider)

        root_logger.addHandler(LoggingHandler(level=logging.INFO, logger_provider=logger_provider))
        logging.info("Exporting logs to %s", OTEL_EXPORTER_OTLP_ENDPOINT)
    except Exception as e:
        logging.warning("OTLP log export disabled: %s", e)


def setup_logging():
    """Configure structured logging for the application."""
    root_logger = logging.getLogger()
    root_logger.setLevel(LOG_LEVEL)

    # uvicorn may have installed its own handlers already
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = CustomJsonFormatter(
        '%(levelname)s %(name)s %(message)s',
        rename_fields={
            'levelname': 'level'
        }
    )
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if OTEL_ENABLED:
        if OTLP_LOGGING_AVAILABLE:
            _add_otlp_handler(root_logger)
        else:
            logging.warning("OTLP log exporter not installed, logging to stdout only")

    # Per-request access lines and SQL echo are covered by traces
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
