"""Tests for Celery tasks and the beat schedule."""

from unittest.mock import MagicMock, patch

import pytest

from app.services import scheduler_config


# =============================================================================
# Billing Task Tests
# =============================================================================


class TestGenerateDueInvoicesTask:
    """Tests for billing.generate_due_invoices task."""

    def test_success_returns_summary(self):
        """Test the sweep summary is returned and the session closed."""
        mock_session = MagicMock()

        with patch("app.tasks.billing.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.billing.billing_service.invoices.generate_due_invoices",
                return_value={"invoices_created": 2},
            ) as mock_run:
                from app.tasks.billing import generate_due_invoices

                result = generate_due_invoices()

                mock_run.assert_called_once_with(mock_session, dry_run=False)
                assert result == {"invoices_created": 2}
                mock_session.close.assert_called_once()

    def test_dry_run_is_forwarded(self):
        mock_session = MagicMock()

        with patch("app.tasks.billing.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.billing.billing_service.invoices.generate_due_invoices"
            ) as mock_run:
                from app.tasks.billing import generate_due_invoices

                generate_due_invoices(dry_run=True)

                mock_run.assert_called_once_with(mock_session, dry_run=True)

    def test_exception_rollback(self):
        """Test exception triggers rollback."""
        mock_session = MagicMock()

        with patch("app.tasks.billing.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.billing.billing_service.invoices.generate_due_invoices",
                side_effect=Exception("Billing error"),
            ):
                from app.tasks.billing import generate_due_invoices

                with pytest.raises(Exception, match="Billing error"):
                    generate_due_invoices()

                mock_session.rollback.assert_called_once()
                mock_session.close.assert_called_once()


class TestRetryDuePaymentsTask:
    """Tests for billing.retry_due_payments task."""

    def test_uses_configured_gateway(self):
        """Test the configured gateway is handed to the retry run."""
        mock_session = MagicMock()
        gateway = MagicMock()

        with patch("app.tasks.billing.SessionLocal", return_value=mock_session):
            with patch("app.tasks.billing.get_gateway", return_value=gateway):
                with patch(
                    "app.tasks.billing.billing_service.payments.retry_due_payments"
                ) as mock_run:
                    from app.tasks.billing import retry_due_payments

                    retry_due_payments()

                    mock_run.assert_called_once_with(mock_session, gateway)
                    mock_session.close.assert_called_once()


class TestAdvanceDunningTask:
    """Tests for billing.advance_dunning task."""

    def test_success(self):
        mock_session = MagicMock()

        with patch("app.tasks.billing.SessionLocal", return_value=mock_session):
            with patch("app.tasks.billing.get_gateway", return_value=None):
                with patch(
                    "app.tasks.billing.billing_service.dunning.advance_dunning"
                ) as mock_run:
                    from app.tasks.billing import advance_dunning

                    advance_dunning()

                    mock_run.assert_called_once_with(mock_session, gateway=None)
                    mock_session.close.assert_called_once()

    def test_exception_closes_session(self):
        """Test exception still closes session."""
        mock_session = MagicMock()

        with patch("app.tasks.billing.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.billing.billing_service.dunning.advance_dunning",
                side_effect=Exception("Dunning error"),
            ):
                from app.tasks.billing import advance_dunning

                with pytest.raises(Exception, match="Dunning error"):
                    advance_dunning()

                mock_session.rollback.assert_called_once()
                mock_session.close.assert_called_once()


# =============================================================================
# Subscription And Event Task Tests
# =============================================================================


class TestExpireDueSubscriptionsTask:
    """Tests for subscriptions.expire_due_subscriptions task."""

    def test_success(self):
        mock_session = MagicMock()

        with patch("app.tasks.subscriptions.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.subscriptions.subscriptions_service.subscriptions.expire_due",
                return_value={"expired": 1},
            ) as mock_run:
                from app.tasks.subscriptions import expire_due_subscriptions

                assert expire_due_subscriptions() == {"expired": 1}

                mock_run.assert_called_once_with(mock_session, dry_run=False)
                mock_session.close.assert_called_once()


class TestDispatchPendingEventsTask:
    """Tests for events.dispatch_pending_events task."""

    def test_success(self):
        mock_session = MagicMock()
        dispatcher = MagicMock()
        dispatcher.dispatch_pending.return_value = {"examined": 0}

        with patch("app.tasks.events.SessionLocal", return_value=mock_session):
            with patch("app.tasks.events.get_dispatcher", return_value=dispatcher):
                from app.tasks.events import dispatch_pending_events

                assert dispatch_pending_events() == {"examined": 0}

                dispatcher.dispatch_pending.assert_called_once_with(mock_session)
                mock_session.close.assert_called_once()

    def test_exception_rollback(self):
        mock_session = MagicMock()
        dispatcher = MagicMock()
        dispatcher.dispatch_pending.side_effect = Exception("Dispatch error")

        with patch("app.tasks.events.SessionLocal", return_value=mock_session):
            with patch("app.tasks.events.get_dispatcher", return_value=dispatcher):
                from app.tasks.events import dispatch_pending_events

                with pytest.raises(Exception, match="Dispatch error"):
                    dispatch_pending_events()

                mock_session.rollback.assert_called_once()


# =============================================================================
# Beat Schedule Tests
# =============================================================================


class TestBuildBeatSchedule:
    """Tests for build_beat_schedule."""

    def test_all_sweeps_enabled_by_default(self, monkeypatch):
        for name in (
            "BILLING_ENABLED",
            "DUNNING_ENABLED",
            "EXPIRY_ENABLED",
            "EVENT_DISPATCH_ENABLED",
        ):
            monkeypatch.delenv(name, raising=False)

        schedule = scheduler_config.build_beat_schedule()

        assert set(schedule) == {
            "invoice_generation",
            "payment_retries",
            "dunning_advance",
            "subscription_expiry",
            "event_dispatch",
        }
        assert schedule["invoice_generation"]["task"] == "app.tasks.billing.generate_due_invoices"

    def test_disabled_sweep_is_left_out(self, monkeypatch):
        """Test an *_ENABLED flag set to false drops its entries."""
        monkeypatch.setenv("BILLING_ENABLED", "false")

        schedule = scheduler_config.build_beat_schedule()

        assert "invoice_generation" not in schedule
        assert "payment_retries" not in schedule
        assert "dunning_advance" in schedule

    def test_interval_floor(self):
        assert scheduler_config._interval(5, floor=60).total_seconds() == 60
        assert scheduler_config._interval(600, floor=60).total_seconds() == 600

    def test_env_bool(self, monkeypatch):
        monkeypatch.setenv("BOOL_VAR", "yes")
        assert scheduler_config._env_bool("BOOL_VAR", False) is True
        monkeypatch.setenv("BOOL_VAR", "")
        assert scheduler_config._env_bool("BOOL_VAR", True) is True

    def test_celery_config(self):
        config = scheduler_config.get_celery_config()
        assert config["task_acks_late"] is True
        assert config["timezone"] == "UTC"
