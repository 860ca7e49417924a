import sys
import socket
import logging
import threading
import requests
from collections import deque
from typing import Any, Deque, Dict, List, Optional


class LokiHandler(logging.Handler):
    """
    Pushes supervisor logs to Grafana Loki in batches from a background thread.

    Install and build output arrives on `proc.<step>` loggers and is sent raw
    with a `step` label, so a failing `npm install` can be queried on its own.
    """

    def __init__(
        self,
        url: str,
        org_id: Optional[str] = None,
        flush_interval: float = 10,
        batch_size: int = 200,
        labels: Optional[Dict[str, str]] = None,
    ):
        """
        Initializes the Loki handler.

        :param url: The base URL of the Loki instance.
        :param org_id: The tenant ID for Loki (e.g., 'X-Scope-OrgID').
        :param flush_interval: Seconds between background flushes.
        :param batch_size: Flush early when this many records are buffered.
        :param labels: Extra stream labels, e.g. the supervised application.
        """
        super().__init__()
        self.url = f"{url.rstrip('/')}/loki/api/v1/push"
        self.org_id = org_id
        self.log_buffer: Deque[Dict[str, Any]] = deque()
        self.buffer_lock = threading.Lock()
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self.labels = {"job": "buildkeeper", "hostname": socket.gethostname(), **(labels or {})}

        self.stop_event = threading.Event()
        self.flush_thread = threading.Thread(target=self._periodic_flush, daemon=True)
        self.flush_thread.name = "LokiFlushThread"
        self.flush_thread.start()

    def _periodic_flush(self) -> None:
        """
        Periodically flushes the log buffer. This runs in a background thread.
        The final flush is called when the handler is closed.
        """
        while not self.stop_event.wait(self.flush_interval):
            self.flush()
        self.flush()

    def emit(self, record: logging.LogRecord) -> None:
        """
        Formats a log record and adds it to the internal buffer.
        If the buffer exceeds the batch size, it triggers a flush.

        :param record: The log record to be processed.
        """
        try:
            stream = {**self.labels, "level": record.levelname.lower()}
            if record.name.startswith("proc."):
                msg = record.getMessage()
                stream["step"] = record.name.split(".", 1)[1]
            else:
                msg = self.format(record)
                stream["logger"] = record.name

            log_entry = {
                "stream": stream,
                "values": [
                    [str(int(record.created * 1e9)), msg]
                ]
            }
            with self.buffer_lock:
                self.log_buffer.append(log_entry)
                should_flush = len(self.log_buffer) >= self.batch_size
            if should_flush:
                self.flush()
        except Exception as e:
            print(f"ERROR: LokiHandler failed to process a log record: {e}", file=sys.stderr)

    def _take_buffer(self) -> List[Dict[str, Any]]:
        with self.buffer_lock:
            logs_to_send = list(self.log_buffer)
            self.log_buffer.clear()
        return logs_to_send

    def flush(self) -> None:
        """
        Sends the buffered logs to Loki. The network call happens outside the lock.
        """
        logs_to_send = self._take_buffer()
        if not logs_to_send:
            return

        try:
            payload = {"streams": logs_to_send}
            headers = {'Content-Type': 'application/json'}
            if self.org_id:
                headers['X-Scope-OrgID'] = self.org_id

            response = requests.post(self.url, json=payload, headers=headers, timeout=5)
            # 204 No Content is the success status for Loki push
            if response.status_code != 204:
                print(
                    f"ERROR: Loki returned non-204 status: {response.status_code} - {response.text}",
                    file=sys.stderr,
                )
        except requests.RequestException as e:
            print(f"CRITICAL: Failed to send {len(logs_to_send)} logs to Loki: {e}", file=sys.stderr)

    def close(self) -> None:
        """
        Shuts down the handler, ensuring all buffered logs are flushed and the thread is joined.
        """
        self.stop_event.set()
        if self.flush_thread.is_alive():
            self.flush_thread.join(timeout=self.flush_interval + 2)
        super().close()
