"""
Integration tests.
End-to-end tests for the batch jobs and the admin CLI.
"""

import pytest
from unittest.mock import Mock, patch

from src.cli import main as cli_main, set_preference
from src.config import ConfigurationError, config_from_dict
from src.data.fetcher import MarketQuote
from src.database.connection import Database
from src.database.models import AlertRule, MarketSnapshot, User
from src.database.repository import RuleRepository, UserRepository, PreferenceRepository
from src.main import (
    AlertApp,
    process_alerts_main,
    send_digests_main,
    send_pending_emails_main,
)
from src.rules.types import ValidationError


def resend_ok() -> Mock:
    response = Mock()
    response.status_code = 200
    response.ok = True
    response.json.return_value = {"id": "em_1"}
    return response


class TestFullAlertFlow:
    """Test complete alert flow from data fetch to notification."""

    @pytest.fixture
    def config(self):
        return config_from_dict(
            {"email": {"api_key": "re_test"}, "alerts": {"symbol_delay_seconds": 0.5}}
        )

    @pytest.fixture
    def fetcher(self):
        quotes = {
            "ACME": MarketQuote(symbol="ACME", current_price=105.0, previous_close=101.0),
            "AAPL": MarketQuote(symbol="AAPL", current_price=175.5, rating="buy"),
        }

        def get_quote(symbol):
            if symbol not in quotes:
                raise ValueError(f"Invalid symbol or no data available: {symbol}")
            return quotes[symbol]

        fetcher = Mock()
        fetcher.get_quote.side_effect = get_quote
        return fetcher

    @pytest.fixture
    def setup_data(self, repos):
        """Set up a user with a price threshold rule on ACME."""
        user = repos["user"].create(User(email="test@example.com", name="Tester"))
        rule = repos["rule"].create(
            AlertRule(
                rule_type="price_threshold",
                conditions={"threshold": 100},
                user_id=user.id,
                symbol="ACME",
            )
        )
        repos["snapshot"].upsert(MarketSnapshot(symbol="ACME", price=95.0))
        return {"user": user, "rule": rule}

    def _app(self, db, config, fetcher, clock, sleep=None) -> AlertApp:
        return AlertApp(db, config, fetcher=fetcher, clock=clock, sleep=sleep or Mock())

    def test_price_crossing_queues_email(self, db, repos, config, fetcher, clock, setup_data):
        """Should record a low-priority alert and queue it without sending."""
        with patch("requests.post") as mock_post:
            summary = self._app(db, config, fetcher, clock).process_alerts()

        mock_post.assert_not_called()
        assert summary.alerts_created == 1
        assert summary.queued == 1

        alerts = repos["alert"].get_user_history(setup_data["user"].id)
        assert len(alerts) == 1
        assert alerts[0].priority == "low"
        assert alerts[0].title == "ACME 股价突破 $100"

        items = repos["queue"].list_all()
        assert len(items) == 1
        assert items[0].status == "pending"
        assert items[0].email == "test@example.com"

        assert repos["rule"].get_by_id(setup_data["rule"].id).trigger_count == 1
        assert repos["snapshot"].get("ACME").price == 105.0

    def test_second_run_does_not_repeat(self, db, repos, config, fetcher, clock, setup_data):
        """Should not re-alert once the snapshot has moved past the threshold."""
        app = self._app(db, config, fetcher, clock)
        app.process_alerts()
        clock.advance(hours=1)
        summary = app.process_alerts()

        assert summary.triggered == 0
        assert len(repos["queue"].list_all()) == 1

    def test_queued_email_is_delivered(self, db, repos, config, fetcher, clock, setup_data):
        """Should send the queued email on the next queue run."""
        app = self._app(db, config, fetcher, clock)
        app.process_alerts()

        with patch("requests.post") as mock_post:
            mock_post.return_value = resend_ok()
            result = app.send_pending_emails()

        assert result.sent == 1
        assert mock_post.call_args[1]["json"]["subject"] == "【Earnlytics】ACME 股价突破 $100"
        assert repos["queue"].list_all()[0].status == "sent"

        alert = repos["alert"].get_user_history(setup_data["user"].id)[0]
        assert alert.sent_via == ["email"]

    def test_high_priority_sent_immediately(self, db, repos, config, fetcher, clock):
        """Should send rating changes through Resend right away."""
        user = repos["user"].create(User(email="test@example.com"))
        repos["rule"].create(AlertRule(rule_type="rating_change", user_id=user.id, symbol="AAPL"))
        repos["snapshot"].upsert(MarketSnapshot(symbol="AAPL", price=170.0, rating="hold"))

        with patch("requests.post") as mock_post:
            mock_post.return_value = resend_ok()
            summary = self._app(db, config, fetcher, clock).process_alerts()

        assert summary.sent_now == 1
        mock_post.assert_called_once()
        assert repos["queue"].list_all() == []
        assert repos["alert"].get_user_history(user.id)[0].sent_via == ["email"]

    def test_unknown_symbol_skipped(self, db, repos, config, fetcher, clock, setup_data):
        """Should skip symbols without data and carry on."""
        repos["rule"].create(
            AlertRule(
                rule_type="price_threshold",
                conditions={"threshold": 1},
                user_id=setup_data["user"].id,
                symbol="ZZZZ",
            )
        )
        sleep = Mock()

        summary = self._app(db, config, fetcher, clock, sleep=sleep).process_alerts()

        assert summary.alerts_created == 1
        # One pause between the two symbols
        sleep.assert_called_once_with(0.5)

    def test_malformed_conditions_do_not_stop_batch(
        self, db, repos, config, fetcher, clock, setup_data
    ):
        """Should treat unreadable conditions as a non-trigger and keep going."""
        bad = repos["rule"].create(
            AlertRule(
                rule_type="price_threshold",
                conditions={"threshold": 100},
                user_id=setup_data["user"].id,
                symbol="AAPL",
            )
        )
        db.connection.execute(
            "UPDATE alert_rules SET conditions = ? WHERE id = ?", ("{bad json", bad.id)
        )
        db.connection.commit()

        summary = self._app(db, config, fetcher, clock).process_alerts()

        # AAPL sorts first and ACME is still processed
        assert summary.errors == 0
        assert summary.alerts_created == 1
        assert repos["alert"].list_for_rule(bad.id) == []
        assert repos["alert"].list_for_rule(setup_data["rule"].id)[0].symbol == "ACME"

    def test_symbol_failure_does_not_stop_batch(
        self, db, repos, config, fetcher, clock, setup_data
    ):
        """Should count a failing symbol as an error and process the rest."""
        repos["rule"].create(
            AlertRule(rule_type="rating_change", user_id=setup_data["user"].id, symbol="AAPL")
        )
        app = self._app(db, config, fetcher, clock)
        process_symbol = app.dispatcher.process_symbol

        def flaky(symbol, context):
            if symbol == "AAPL":
                raise RuntimeError("database is locked")
            return process_symbol(symbol, context)

        with patch.object(app.dispatcher, "process_symbol", side_effect=flaky):
            summary = app.process_alerts()

        assert summary.errors == 1
        assert summary.alerts_created == 1
        assert repos["snapshot"].get("ACME").price == 105.0

    def test_snapshot_kept_after_dispatch_error(
        self, db, repos, config, fetcher, clock, setup_data
    ):
        """Should keep the old snapshot so the crossing is retried next run."""
        app = self._app(db, config, fetcher, clock)

        with patch.object(app.alert_repo, "create", side_effect=RuntimeError("disk full")):
            summary = app.process_alerts()

        assert summary.errors == 1
        assert summary.alerts_created == 0
        assert repos["snapshot"].get("ACME").price == 95.0

        summary = app.process_alerts()
        assert summary.alerts_created == 1
        assert repos["snapshot"].get("ACME").price == 105.0

    def test_send_pending_requires_provider(self, db, fetcher, clock):
        """Should refuse to drain the queue without credentials."""
        app = self._app(db, config_from_dict({}), fetcher, clock)
        with pytest.raises(ConfigurationError):
            app.send_pending_emails()


class TestEntryPoints:
    """Test batch job exit codes."""

    @pytest.fixture
    def config_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("RESEND_API_KEY", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(
            f"database:\n  path: {tmp_path / 'alerts.db'}\n"
            "email:\n  api_key: ${RESEND_API_KEY}\n"
        )
        return str(path)

    def test_missing_config(self, tmp_path):
        """Should exit 1 when the config file is missing."""
        assert process_alerts_main(["--config", str(tmp_path / "nope.yaml")]) == 1

    def test_malformed_config(self, tmp_path):
        """Should exit 1 on unparseable YAML."""
        path = tmp_path / "config.yaml"
        path.write_text("database: [unclosed\n")
        assert process_alerts_main(["--config", str(path)]) == 1

    def test_process_alerts_with_no_rules(self, config_file):
        """Should exit 0 when there is nothing to do."""
        assert process_alerts_main(["--config", config_file]) == 0

    def test_send_digests_requires_period(self, config_file):
        """Should exit 1 on a missing or invalid period."""
        assert send_digests_main(["--config", config_file]) == 1
        assert send_digests_main(["monthly", "--config", config_file]) == 1

    def test_send_digests(self, config_file):
        """Should exit 0 for a valid period."""
        assert send_digests_main(["daily", "--config", config_file]) == 0

    def test_send_pending_without_api_key(self, config_file):
        """Should exit 1 without Resend credentials."""
        assert send_pending_emails_main(["--config", config_file]) == 1

    def test_send_pending_with_api_key(self, config_file, monkeypatch):
        """Should exit 0 with credentials and an empty queue."""
        monkeypatch.setenv("RESEND_API_KEY", "re_test")
        with patch("requests.post") as mock_post:
            assert send_pending_emails_main(["--config", config_file]) == 0
        mock_post.assert_not_called()


class TestCli:
    """Test the admin CLI."""

    @pytest.fixture
    def db_path(self, tmp_path):
        return str(tmp_path / "cli.db")

    def _open(self, db_path) -> Database:
        db = Database(db_path)
        db.initialize()
        return db

    def test_add_user(self, db_path, capsys):
        """Should create a user."""
        assert cli_main(["--db", db_path, "user", "add", "--email", "a@example.com"]) == 0
        assert "Created user with ID: 1" in capsys.readouterr().out

        db = self._open(db_path)
        assert UserRepository(db).get_by_id(1).email == "a@example.com"
        db.close()

    def test_add_rule(self, db_path):
        """Should validate and store a rule with an upper-cased symbol."""
        cli_main(["--db", db_path, "user", "add", "--email", "a@example.com"])
        code = cli_main([
            "--db", db_path, "rules", "add", "--user", "1", "--symbol", "acme",
            "--type", "price_threshold", "--conditions", '{"threshold": 100}',
        ])
        assert code == 0

        db = self._open(db_path)
        rule = RuleRepository(db).get_by_id(1)
        assert rule.symbol == "ACME"
        assert rule.conditions == {"threshold": 100}
        db.close()

    def test_add_rule_invalid_conditions(self, db_path, capsys):
        """Should reject conditions that do not fit the rule type."""
        code = cli_main(["--db", db_path, "rules", "add", "--type", "price_threshold"])
        assert code == 1
        assert "threshold" in capsys.readouterr().out

    def test_add_rule_unknown_user(self, db_path):
        """Should reject rules for unknown users."""
        code = cli_main([
            "--db", db_path, "rules", "add", "--user", "9", "--type", "rating_change",
        ])
        assert code == 1

    def test_pause_and_resume(self, db_path):
        """Should toggle a rule's active flag."""
        cli_main(["--db", db_path, "rules", "add", "--type", "rating_change"])
        assert cli_main(["--db", db_path, "rules", "pause", "1"]) == 0

        db = self._open(db_path)
        assert RuleRepository(db).get_by_id(1).is_active is False
        db.close()

        assert cli_main(["--db", db_path, "rules", "resume", "1"]) == 0
        assert cli_main(["--db", db_path, "rules", "pause", "99"]) == 1

    def test_set_preferences(self, db_path):
        """Should store digest preferences."""
        cli_main(["--db", db_path, "user", "add", "--email", "a@example.com"])
        code = cli_main([
            "--db", db_path, "prefs", "set", "--user", "1", "--frequency", "weekly",
            "--day", "5", "--time", "18:30", "--email-off",
        ])
        assert code == 0

        db = self._open(db_path)
        pref = PreferenceRepository(db).get(1)
        assert pref.digest_frequency == "weekly"
        assert pref.digest_day == 5
        assert pref.digest_time == "18:30:00"
        assert pref.email_enabled is False
        db.close()

    def test_set_preference_validation(self, db):
        """Should reject impossible days and times."""
        user = UserRepository(db).create(User(email="a@example.com"))
        with pytest.raises(ValidationError):
            set_preference(db, user.id, day=7)
        with pytest.raises(ValidationError):
            set_preference(db, user.id, time="25:00")

    def test_queue_status(self, db_path, capsys):
        """Should print counts for every status."""
        assert cli_main(["--db", db_path, "queue", "status"]) == 0
        out = capsys.readouterr().out
        assert "pending: 0" in out
        assert "failed: 0" in out
