import json
import logging
import os
import sys
import tempfile

from wavestats.crosscutting.logging import (
    CorrelationContext, SecretMasker, StructuredFormatter, log_error,
    log_query_complete, log_token_refresh, log_with_fields, query_var, request_id_var,
    setup_logging, user_id_var,
)


def _record(message, *args, **attrs):
    record = logging.LogRecord('wavestats.test', logging.INFO, __file__, 10, message, args, None)
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


class TestSecretMasker:
    """Tests for secret masking functionality."""

    def setup_method(self):
        """Set up test fixtures."""
        self.masker = SecretMasker()

    def test_mask_refresh_token(self):
        masked = self.masker.mask_secrets("refresh_token=AQDxyz1234567890")
        assert masked == "refresh_token: AQDx********7890"

    def test_mask_client_secret(self):
        masked = self.masker.mask_secrets("client_secret: my_super_secret_key_12345")
        assert masked == "client_secret: my_s*****************2345"

    def test_mask_bearer_header(self):
        text = "Authorization: Bearer BQDabc123456789xyz"
        masked = self.masker.mask_secrets(text)
        assert masked == "Authorization: Bearer BQDa**********9xyz"
        assert "BQDabc123456789xyz" not in masked

    def test_mask_oauth_code(self):
        masked = self.masker.mask_secrets("code: AQABC123DEF456GHI789")
        assert masked == "code: AQAB************I789"

    def test_short_values_are_left_alone(self):
        assert self.masker.mask_secrets("access_token=abc") == "access_token=abc"

    def test_no_secrets_in_text(self):
        text = "Query completed without incident"
        assert self.masker.mask_secrets(text) == text

    def test_empty_text(self):
        assert self.masker.mask_secrets("") == ""
        assert self.masker.mask_secrets(None) is None

    def test_mask_dict_masks_secret_keys(self):
        masked = self.masker.mask_dict({
            'access_token': 'BQDabc123456789xyz',
            'error_code': 'UPSTREAM_AUTH_ERROR',
            'nested': {'client_secret': 'abcdefghijkl'},
            'count': 3,
        })

        assert masked['access_token'] == 'BQDa**********9xyz'
        assert masked['error_code'] == 'UPSTREAM_AUTH_ERROR'
        assert masked['nested']['client_secret'] == 'abcd****ijkl'
        assert masked['count'] == 3


class TestStructuredFormatter:
    """Tests for structured logging formatter."""

    def setup_method(self):
        """Set up test fixtures."""
        self.formatter = StructuredFormatter()

    def test_format_basic_log(self):
        data = json.loads(self.formatter.format(_record('Query completed')))

        assert data['level'] == 'INFO'
        assert data['logger'] == 'wavestats.test'
        assert data['message'] == 'Query completed'
        assert data['line'] == 10
        assert data['ts'].endswith('Z')
        assert 'requestId' not in data

    def test_format_with_correlation(self):
        with CorrelationContext(request_id='req-1', query='userStats', user_id='alice'):
            data = json.loads(self.formatter.format(_record('Query completed')))

        assert data['requestId'] == 'req-1'
        assert data['query'] == 'userStats'
        assert data['userId'] == 'alice'

    def test_format_masks_message(self):
        record = _record('Refreshing with refresh_token=%s', 'AQDxyz1234567890')

        data = json.loads(self.formatter.format(record))

        assert 'AQDxyz1234567890' not in data['message']

    def test_format_with_fields(self):
        record = _record('Token refreshed', fields={'request_id': 'req-1', 'access_token': 'BQDabc123456789xyz'})

        data = json.loads(self.formatter.format(record))

        assert data['fields']['request_id'] == 'req-1'
        assert data['fields']['access_token'] == 'BQDa**********9xyz'

    def test_format_with_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = _record('Failed', exc_info=sys.exc_info())

        data = json.loads(self.formatter.format(record))

        assert 'ValueError: boom' in data['exception']


class TestCorrelationContext:
    """Tests for correlation context handling."""

    def test_restores_previous_values(self):
        with CorrelationContext(request_id='outer', query='me'):
            with CorrelationContext(user_id='alice'):
                assert request_id_var.get() == 'outer'
                assert user_id_var.get() == 'alice'
            assert user_id_var.get() is None
            assert query_var.get() == 'me'

        assert request_id_var.get() is None
        assert query_var.get() is None

    def test_restores_on_exception(self):
        try:
            with CorrelationContext(request_id='req-1'):
                raise RuntimeError("fail")
        except RuntimeError:
            pass

        assert request_id_var.get() is None


class TestLoggingHelpers:
    """Tests for logging setup and helper functions."""

    def test_setup_logging_with_file(self):
        temp_dir = tempfile.mkdtemp()
        log_file = os.path.join(temp_dir, 'wavestats.log')

        logger = setup_logging('DEBUG', log_file)
        logger.info("written to file")
        for handler in logger.handlers:
            handler.flush()

        assert logger.name == 'wavestats'
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2
        assert all(isinstance(h.formatter, StructuredFormatter) for h in logger.handlers)
        with open(log_file, encoding='utf-8') as f:
            line = json.loads(f.readline())
        assert line['message'] == 'written to file'

    def test_log_with_fields(self, caplog):
        logger = logging.getLogger('wavestats.test')

        with caplog.at_level(logging.INFO, logger='wavestats'):
            log_with_fields(logger, 'INFO', 'Fetched page', {'page': 1}, size=20)

        record = caplog.records[-1]
        assert record.getMessage() == 'Fetched page'
        assert record.fields == {'page': 1, 'size': 20}

    def test_log_with_fields_below_level_is_skipped(self, caplog):
        logger = logging.getLogger('wavestats.test')

        with caplog.at_level(logging.WARNING, logger='wavestats'):
            log_with_fields(logger, 'DEBUG', 'noise')

        assert caplog.records == []

    def test_log_query_complete(self, caplog):
        logger = logging.getLogger('wavestats.test')

        with caplog.at_level(logging.INFO, logger='wavestats'):
            log_query_complete(logger, 'topTracks', 42, outcome='degraded')

        record = caplog.records[-1]
        assert record.fields == {'duration_ms': 42, 'outcome': 'degraded'}

    def test_log_token_refresh_failure_is_a_warning(self, caplog):
        logger = logging.getLogger('wavestats.test')

        with caplog.at_level(logging.INFO, logger='wavestats'):
            log_token_refresh(logger, False, request_id='req-1')

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.fields == {'succeeded': False, 'request_id': 'req-1'}

    def test_log_error(self, caplog):
        logger = logging.getLogger('wavestats.test')

        with caplog.at_level(logging.ERROR, logger='wavestats'):
            log_error(logger, 'Query failed', KeyError('id'), query='me')

        record = caplog.records[-1]
        assert record.fields['error_type'] == 'KeyError'
        assert record.fields['query'] == 'me'
