import logging
import sys
# Configure logging format
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

def setup_logger(name: str, level=logging.INFO) -> logging.Logger:
    """
    Sets up a logger with consistent formatting.

    Args:
        name: Name of the logger (typically __name__ from the calling module)
        level: Logging level (default: INFO)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid adding handlers multiple times
    if not logger.handlers:
        # Console handler
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)

        # Formatter
        formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
        console_handler.setFormatter(formatter)

        logger.addHandler(console_handler)

    return logger

def log_llm_interaction(logger: logging.Logger, template_path: str, params: dict,
                        response: str, model_name: str, duration_ms: float = None):
    """
    Logs an LLM interaction with all relevant details.

    Args:
        logger: Logger instance to use
        template_path: Path to the template used
        params: Parameters passed to the template
        response: Response from the LLM
        model_name: Name of the model used
        duration_ms: Optional duration of the call in milliseconds
    """
    duration_str = f" ({duration_ms:.2f}ms)" if duration_ms else ""
    logger.info(f"LLM Request{duration_str} - Model: {model_name}")
    logger.debug(f"  Template: {template_path}")
    logger.debug(f"  Params: {params}")
    logger.info(f"  Response: {response[:200]}{'...' if len(response) > 200 else ''}")

def log_stage_result(logger: logging.Logger, feed_id: int, stage: str, status: str,
                     detail: str = None):
    """
    Logs the outcome of one pipeline stage for a feed.

    Args:
        logger: Logger instance to use
        feed_id: Feed the pipeline is running for
        stage: Stage name (e.g. "enrich", "score")
        status: "ok", "skipped" or "failed"
        detail: Optional reason or summary
    """
    detail_str = f": {detail}" if detail else ""
    if status == "failed":
        logger.warning(f"Feed {feed_id} stage {stage} failed{detail_str}")
    elif status == "skipped":
        logger.debug(f"Feed {feed_id} stage {stage} skipped{detail_str}")
    else:
        logger.info(f"Feed {feed_id} stage {stage} ok{detail_str}")

def log_push_sent(logger: logging.Logger, chat_id: str, text: str):
    """
    Logs a sent push notification.

    Args:
        logger: Logger instance to use
        chat_id: Chat ID the notification was sent to
        text: Message text
    """
    logger.info(f"📤 Push Sent - Chat: {chat_id}")
    logger.info(f"  Text: {text[:200]}{'...' if len(text) > 200 else ''}")
