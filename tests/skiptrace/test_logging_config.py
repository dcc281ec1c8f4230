"""Tests for structured logging configuration."""
import json
import logging
import os
from unittest.mock import patch

import pytest

from skiptrace.logging_config import configure_logging, JSONFormatter, ContextTextFormatter
from skiptrace.pipeline.base import LeadRecord
from skiptrace.pipeline.orchestrator import ProviderOrchestrator


@pytest.fixture(autouse=True)
def _reset_root_logger():
    """Reset root logger state after each test."""
    root = logging.getLogger()
    original_level = root.level
    original_handlers = root.handlers[:]
    yield
    root.setLevel(original_level)
    root.handlers = original_handlers


class TestConfigureLogging:
    """Tests for configure_logging()."""

    def test_default_level_is_info(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop('LOG_LEVEL', None)
            configure_logging()
        assert logging.getLogger().level == logging.INFO

    def test_log_level_env_var_changes_level(self):
        with patch.dict(os.environ, {'LOG_LEVEL': 'DEBUG'}):
            configure_logging()
        assert logging.getLogger().level == logging.DEBUG

    def test_log_level_case_insensitive(self):
        with patch.dict(os.environ, {'LOG_LEVEL': 'warning'}):
            configure_logging()
        assert logging.getLogger().level == logging.WARNING

    def test_invalid_log_level_defaults_to_info(self):
        with patch.dict(os.environ, {'LOG_LEVEL': 'NONSENSE'}):
            configure_logging()
        assert logging.getLogger().level == logging.INFO

    def test_text_format_includes_logger_name(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'text'}):
            configure_logging()
        logging.getLogger('pipeline.manager').info("run started")
        output = capsys.readouterr().err
        assert 'pipeline.manager' in output
        assert 'run started' in output
        assert 'INFO' in output

    def test_json_format_produces_parseable_json(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'json'}):
            configure_logging()
        logging.getLogger('pipeline.budget').warning("window paused")
        parsed = json.loads(capsys.readouterr().err.strip())
        assert parsed['level'] == 'WARNING'
        assert parsed['logger'] == 'pipeline.budget'
        assert parsed['message'] == 'window paused'
        assert 'timestamp' in parsed

    def test_json_format_includes_exception(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'json'}):
            configure_logging()
        try:
            raise ValueError("boom")
        except ValueError:
            logging.getLogger('test.exc').error("failed", exc_info=True)
        parsed = json.loads(capsys.readouterr().err.strip())
        assert 'ValueError' in parsed['exception']

    def test_third_party_loggers_quieted_to_warning(self):
        configure_logging()
        for name in ['urllib3', 'requests', 'rq.worker', 'sqlalchemy.engine', 'alembic']:
            assert logging.getLogger(name).level == logging.WARNING

    def test_no_duplicate_handlers_on_repeated_calls(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1


class TestJSONFormatter:
    """Tests for the JSONFormatter class."""

    def _record(self, **extra):
        record = logging.LogRecord(
            name='pipeline.orchestrator', level=logging.INFO, pathname='', lineno=0,
            msg='lead %s resolved', args=('L1',), exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_format_basic_record(self):
        parsed = json.loads(JSONFormatter().format(self._record()))
        assert parsed['message'] == 'lead L1 resolved'
        assert parsed['logger'] == 'pipeline.orchestrator'
        assert 'run_id' not in parsed

    def test_context_extras_included(self):
        parsed = json.loads(JSONFormatter().format(
            self._record(run_id='r-1', lead_id='L1', provider='primary')
        ))
        assert parsed['run_id'] == 'r-1'
        assert parsed['lead_id'] == 'L1'
        assert parsed['provider'] == 'primary'

    def test_non_serializable_extra_stringified(self):
        parsed = json.loads(JSONFormatter().format(self._record(run_id=object())))
        assert parsed['run_id'].startswith('<object')


class TestContextTextFormatter:

    def _format(self, **extra):
        record = logging.LogRecord(
            name='pipeline.manager', level=logging.INFO, pathname='', lineno=0,
            msg='item done', args=(), exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return ContextTextFormatter('%(levelname)s %(name)s: %(message)s').format(record)

    def test_no_context(self):
        assert self._format() == 'INFO pipeline.manager: item done'

    def test_context_appended(self):
        assert self._format(run_id='r-1', lead_id='L1') == \
            'INFO pipeline.manager: item done [run_id=r-1 lead_id=L1]'


class TestEngineLogContext:
    """Engine log lines carry run/lead/provider context end to end."""

    def _json_lines(self, capsys):
        return [json.loads(line) for line in capsys.readouterr().err.splitlines() if line.strip()]

    def test_orchestrator_lines_have_context(self, capsys, make_adapter, ledger):
        with patch.dict(os.environ, {'LOG_FORMAT': 'json', 'LOG_LEVEL': 'INFO'}):
            configure_logging()
        chain = [
            make_adapter('batchdata', 'primary', cost_cents=25, error='HTTP 503'),
            make_adapter('whitepages', 'secondary', cost_cents=30),
        ]
        ProviderOrchestrator(chain, ledger).trace(LeadRecord(id='L7', address='1 Main St'), run_id='r-9')

        lines = [e for e in self._json_lines(capsys) if e['logger'] == 'pipeline.orchestrator']
        assert [(e['run_id'], e['lead_id'], e['provider']) for e in lines] == [
            ('r-9', 'L7', 'primary'), ('r-9', 'L7', 'secondary'),
        ]

    def test_manager_lines_have_context(self, capsys, manager, make_lead):
        with patch.dict(os.environ, {'LOG_FORMAT': 'json', 'LOG_LEVEL': 'INFO'}):
            configure_logging()
        make_lead('L1')
        run_id = manager.create_run(['L1', 'ghost'])
        manager.execute_run(run_id, write_report=False)

        lines = [e for e in self._json_lines(capsys) if e['logger'] == 'pipeline.manager' and 'lead_id' in e]
        by_lead = {e['lead_id']: e for e in lines}
        assert by_lead['L1']['run_id'] == run_id
        assert by_lead['L1']['provider'] == 'primary'
        assert by_lead['ghost']['run_id'] == run_id
        assert 'provider' not in by_lead['ghost']
