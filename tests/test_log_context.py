"""
Correlation ID Tests

Binding, thread propagation, header masking and log record injection.
"""
import logging
import re

from csm_admin.log_context import (
    CORRELATION_ID_HEADER,
    MASK,
    CorrelationLogFilter,
    correlation_headers,
    generate_correlation_id,
    get_correlation_id,
    init_logging,
    mask_headers,
    operation_context,
    run_in_context,
)


class TestCorrelationId:
    def test_format(self):
        assert re.match(r"^\d+-[0-9a-f]{8}$", generate_correlation_id())

    def test_unique(self):
        assert len({generate_correlation_id() for _ in range(100)}) == 100

    def test_context_binds_and_resets(self):
        assert get_correlation_id() is None
        with operation_context("op-1") as correlation_id:
            assert correlation_id == "op-1"
            assert get_correlation_id() == "op-1"
            with operation_context() as inner:
                assert get_correlation_id() == inner
            assert get_correlation_id() == "op-1"
        assert get_correlation_id() is None

    def test_worker_threads_inherit(self):
        seen = []
        with operation_context("op-2"):
            thread = run_in_context(lambda: seen.append(get_correlation_id()))
        thread.join(5)
        assert seen == ["op-2"]
        assert thread.daemon


class TestHeaders:
    def test_correlation_header(self):
        assert correlation_headers() == {}
        with operation_context("op-3"):
            assert correlation_headers() == {CORRELATION_ID_HEADER: "op-3"}

    def test_mask_headers(self):
        masked = mask_headers({"Authorization": "Bearer abc", "X-Vault-Token": "s.x", "Accept": "application/json"})
        assert masked == {"Authorization": MASK, "X-Vault-Token": MASK, "Accept": "application/json"}
        assert mask_headers(None) == {}


class TestLogging:
    def make_record(self):
        return logging.LogRecord("csm_admin.test", logging.INFO, __file__, 1, "hello", None, None)

    def test_filter_injects_id(self):
        record = self.make_record()
        CorrelationLogFilter().filter(record)
        assert record.correlation_id == "-"
        with operation_context("op-4"):
            record = self.make_record()
            CorrelationLogFilter().filter(record)
        assert record.correlation_id == "op-4"

    def test_init_logging_writes_file(self, tmp_path):
        root = logging.getLogger()
        saved_level = root.level
        saved = [(handler, handler.formatter, list(handler.filters)) for handler in root.handlers]
        log_file = tmp_path / "csm.log"
        try:
            init_logging(logging.INFO, log_file=str(log_file))
            with operation_context("op-5"):
                logging.getLogger("csm_admin.test").info("power off submitted")
        finally:
            for handler in root.handlers[:]:
                if handler not in [entry[0] for entry in saved]:
                    root.removeHandler(handler)
                    handler.close()
            for handler, formatter, filters in saved:
                handler.setFormatter(formatter)
                handler.filters = filters
            root.setLevel(saved_level)

        assert "[op-5] csm_admin.test - INFO - power off submitted" in log_file.read_text()
