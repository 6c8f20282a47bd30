"""Tests for startup handlers and process wiring"""

import threading
from unittest.mock import patch

from sqlalchemy import create_engine, inspect

import main
from api.models import Base, init_db
from api.rest_api_server import initialize_database_and_metrics


class TestStartupEvents:
    """Test suite for startup event handlers"""

    @patch('api.rest_api_server.SessionLocal')
    @patch('api.rest_api_server.init_db')
    def test_initialize_database_and_metrics(self, mock_init_db, mock_session_local):
        """Tables are created and the session is closed again"""
        initialize_database_and_metrics()

        mock_init_db.assert_called_once()
        mock_session_local.assert_called_once()
        mock_session_local.return_value.close.assert_called_once()

    @patch('api.rest_api_server.services._refresh_gauges')
    @patch('api.rest_api_server.init_db')
    def test_startup_survives_metrics_error(self, mock_init_db, mock_refresh):
        mock_refresh.side_effect = RuntimeError("no gauges")
        initialize_database_and_metrics()
        mock_refresh.assert_called_once()


class TestDatabaseSetup:
    """Test database setup functionality"""

    def test_database_creation(self):
        """Test that database tables can be created"""
        engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
        init_db(engine)

        tables = inspect(engine).get_table_names()
        for table in ['namespaces', 'clusters', 'instances', 'consensus_records']:
            assert table in tables, f"Table {table} should exist"
        assert set(tables) == set(Base.metadata.tables)


class TestGarbageCollectorLoop:
    @patch('main.services.collect_garbage')
    def test_runs_until_stopped(self, mock_collect):
        stop_event = threading.Event()
        mock_collect.side_effect = lambda db: stop_event.set()

        main.run_garbage_collector(stop_event)

        mock_collect.assert_called_once()

    @patch('main.SessionLocal')
    @patch('main.services.collect_garbage')
    def test_error_does_not_stop_loop(self, mock_collect, mock_session_local):
        stop_event = threading.Event()
        calls = []

        def flaky(db):
            calls.append(db)
            if len(calls) == 1:
                raise RuntimeError("database is locked")
            stop_event.set()

        mock_collect.side_effect = flaky
        with patch.object(main, 'GC_INTERVAL_SECONDS', 0):
            main.run_garbage_collector(stop_event)

        assert len(calls) == 2
        assert mock_session_local.return_value.close.call_count == 2
