"""Test suite for the license portal: configuration, models, the license
service, the subscription and payment ledgers, notifications and the CLI.

Webhook and checkout flows live in test_webhooks.py.
"""

import datetime
import re
from decimal import Decimal
from unittest.mock import patch

import pytest
import stripe
from click.testing import CliRunner

from cli import cli
from config import load_config
from config_models import AppConfig, EmailConfig, LicensingConfig, TierPolicy
from extensions import db
from mailer import MailerError
from models import (
    LICENSE_ACTIVE,
    LICENSE_EXPIRED,
    LICENSE_GRACE_PERIOD,
    LICENSE_PENDING_ACTIVATION,
    LICENSE_REVOKED,
    LICENSE_SUSPENDED,
    PAYMENT_REFUNDED,
    PAYMENT_SUCCEEDED,
    PROVIDER_STRIPE,
    SUB_ACTIVE,
    SUB_CANCELLED,
    SUB_EXPIRED,
    SUB_PAST_DUE,
    TIER_ENTERPRISE,
    TIER_STANDARD,
    TIER_TRIAL,
    AuditLog,
    License,
    LicensePayment,
    LicenseSubscription,
    PendingCheckout,
)
from services import licensing, payments, pending_checkouts, subscriptions
from services.errors import AlreadyProcessed, SemanticError, StalePeriodError
from services.notifications import (
    NOTICE_PURCHASE_CONFIRMED,
    NotificationDispatcher,
    Notifier,
    Notice,
)
from utils import (
    add_interval,
    as_utc,
    clean_str,
    decimal_to_minor,
    from_timestamp,
    minor_to_decimal,
    safe_int,
    utc_now,
)

KEY_RE = re.compile(r"^ALG-(TRL|STD|ENT)-[A-HJ-NP-Z2-9]{4}-\d{4}-[A-HJ-NP-Z2-9]{4}$")
NOW = datetime.datetime(2026, 3, 15, 12, 0, tzinfo=datetime.timezone.utc)


def _issue(tier=TIER_STANDARD, email="a@b.com", now=NOW, sub_id="sub_test"):
    return licensing.issue_license(
        tier, email, "Ann Buyer", "Acme", "shop.example.com", PROVIDER_STRIPE, sub_id, now=now
    )


def _make_subscription(sub_id="sub_test", now=NOW):
    license = _issue(now=now, sub_id=sub_id)
    sub = subscriptions.create_subscription(LicenseSubscription(
        license_id=license.id,
        provider=PROVIDER_STRIPE,
        provider_subscription_id=sub_id,
        tier=TIER_STANDARD,
        customer_email=license.customer_email,
        amount=Decimal("299.00"),
        currency="USD",
        current_period_start=now,
        current_period_end=license.valid_until,
        payment_count=0,
    ))
    db.session.commit()
    return license, sub


def _payment(sub, payment_id, amount="299.00"):
    return LicensePayment(
        subscription_id=sub.id,
        license_id=sub.license_id,
        provider=PROVIDER_STRIPE,
        provider_payment_id=payment_id,
        status=PAYMENT_SUCCEEDED,
        amount=Decimal(amount),
        currency="USD",
    )


# ============================================================================
# Utility functions
# ============================================================================


class TestUtilityFunctions:
    def test_add_interval_year(self):
        assert add_interval(NOW, "year") == NOW.replace(year=2027)

    def test_add_interval_clamps_month_end(self):
        jan31 = datetime.datetime(2026, 1, 31, tzinfo=datetime.timezone.utc)
        assert add_interval(jan31, "month").day == 28
        leap = datetime.datetime(2024, 2, 29, tzinfo=datetime.timezone.utc)
        assert add_interval(leap, "year") == datetime.datetime(2025, 2, 28, tzinfo=datetime.timezone.utc)

    def test_add_interval_days_and_unknown(self):
        assert add_interval(NOW, "day", 14) == NOW + datetime.timedelta(days=14)
        with pytest.raises(ValueError):
            add_interval(NOW, "fortnight")

    def test_money_conversion(self):
        assert minor_to_decimal(29900) == Decimal("299.00")
        assert minor_to_decimal("2481700") == Decimal("24817.00")
        assert minor_to_decimal(None) == Decimal("0.00")
        assert decimal_to_minor(Decimal("24817.00")) == 2481700
        assert decimal_to_minor(Decimal("0.015")) == 2

    def test_as_utc_and_timestamps(self):
        naive = datetime.datetime(2026, 1, 1, 10, 0)
        assert as_utc(naive).tzinfo == datetime.timezone.utc
        assert as_utc(None) is None
        assert from_timestamp(0) == datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)
        assert from_timestamp("not-a-number") is None

    def test_safe_int_and_clean_str(self):
        assert safe_int("5") == 5
        assert safe_int("x", 3) == 3
        assert clean_str("  a ") == "a"
        assert clean_str("   ") is None


# ============================================================================
# Configuration
# ============================================================================


class TestConfigModels:
    def test_defaults(self):
        app_cfg, email_cfg, stripe_cfg, razorpay_cfg, lic_cfg, db_uri = load_config()
        assert isinstance(app_cfg, AppConfig)
        assert isinstance(lic_cfg, LicensingConfig)
        assert db_uri == "sqlite://"
        assert stripe_cfg.currency == "USD"
        assert razorpay_cfg.currency == "INR"
        assert razorpay_cfg.exchange_rate == Decimal("83")
        assert lic_cfg.billing_interval == "year"
        assert lic_cfg.trial_days == 14
        assert lic_cfg.grace_period_days == 7
        assert lic_cfg.prices[TIER_STANDARD] == Decimal("299.00")
        assert lic_cfg.tier_policies[TIER_ENTERPRISE].max_activations == 5
        assert lic_cfg.tier_policies[TIER_TRIAL].max_products == 100

    def test_yaml_and_env_overrides(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "licensing:\n"
            "  grace_period_days: 3\n"
            "  prices:\n"
            "    Standard: '349.00'\n"
            "  tiers:\n"
            "    Trial:\n"
            "      max_products: 25\n"
            "razorpay:\n"
            "  exchange_rate: '84.5'\n",
            encoding="utf-8",
        )
        monkeypatch.setenv("CONFIG_PATH", str(config_file))
        monkeypatch.setenv("LICENSE_GRACE_PERIOD_DAYS", "10")
        _, _, _, razorpay_cfg, lic_cfg, _ = load_config()
        assert lic_cfg.grace_period_days == 10
        assert lic_cfg.prices[TIER_STANDARD] == Decimal("349.00")
        assert lic_cfg.prices[TIER_ENTERPRISE] == Decimal("999.00")
        assert lic_cfg.tier_policies[TIER_TRIAL].max_products == 25
        assert lic_cfg.tier_policies[TIER_TRIAL].max_admin_users == 2
        assert razorpay_cfg.exchange_rate == Decimal("84.5")

    def test_tier_policy_defaults(self):
        policy = TierPolicy(None, None, None, None, 1)
        assert policy.features == []


# ============================================================================
# App creation
# ============================================================================


class TestAppCreation:
    def test_app_config(self, app):
        assert app.config["TESTING"] is True
        assert app.config["LICENSING_CONFIG"].key_prefix == "ALG"
        assert app.config["STRIPE_CONFIG"].webhook_secret == "whsec_test_secret"

    def test_tables_created(self, app):
        with app.app_context():
            assert License.query.count() == 0
            assert LicenseSubscription.query.count() == 0

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ok"


class TestSecurityHeaders:
    def test_headers_present(self, client):
        resp = client.get("/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["X-XSS-Protection"] == "0"
        assert "frame-ancestors 'none'" in resp.headers["Content-Security-Policy"]


class TestErrorHandlers:
    def test_404_is_json(self, client):
        resp = client.get("/no-such-page")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Not found"

    def test_405_is_json(self, client):
        resp = client.get("/webhook/stripe")
        assert resp.status_code == 405


# ============================================================================
# License keys
# ============================================================================


class TestLicenseKeys:
    def test_key_format(self, app):
        with app.app_context():
            for tier in (TIER_TRIAL, TIER_STANDARD, TIER_ENTERPRISE):
                key = licensing.generate_license_key(tier, NOW)
                assert KEY_RE.match(key), key
                assert "-2603-" in key
            assert licensing.generate_license_key(TIER_ENTERPRISE).startswith("ALG-ENT-")

    def test_collision_regenerates(self, app):
        with app.app_context():
            existing = _issue()
            db.session.commit()
            keys = iter([existing.key, "ALG-STD-AAAA-2603-BBBB"])
            with patch("services.licensing.generate_license_key", side_effect=lambda *a: next(keys)):
                other = _issue(email="c@d.com", sub_id="sub_other")
            assert other.key == "ALG-STD-AAAA-2603-BBBB"

    def test_mask(self):
        assert licensing.mask_license_key("ALG-STD-AAAA-2603-BBBB") == "ALG-**************BBBB"
        assert licensing.mask_license_key("SHORT") == "SHORT"
        assert licensing.mask_license_key(None) is None

    def test_signature_changes_with_validity(self, app):
        with app.app_context():
            license = _issue()
            db.session.commit()
            before = license.signature
            assert before == licensing.license_signature(license)
            licensing.extend_license(license.id, now=NOW)
            assert license.signature != before


# ============================================================================
# License issuance & renewal
# ============================================================================


class TestLicenseIssuance:
    def test_standard_one_year(self, app):
        with app.app_context():
            license = _issue()
            assert license.status == LICENSE_ACTIVE
            assert license.tier == TIER_STANDARD
            assert as_utc(license.valid_from) == NOW
            assert as_utc(license.valid_until) == NOW.replace(year=2027)
            assert license.max_admin_users == 5
            assert license.max_products is None
            assert "advanced_reporting" in license.features
            assert license.renewal_amount == Decimal("299.00")
            assert license.grace_period_days == 7

    def test_trial_fourteen_days(self, app):
        with app.app_context():
            license = _issue(tier=TIER_TRIAL)
            assert as_utc(license.valid_until) == NOW + datetime.timedelta(days=14)
            assert license.auto_renew is False
            assert license.max_products == 100
            assert "advanced_reporting" not in license.features

    def test_enterprise_policy(self, app):
        with app.app_context():
            license = _issue(tier=TIER_ENTERPRISE)
            assert license.max_activations == 5
            assert license.max_stores is None
            assert "white_labeling" in license.features

    def test_rejects_unknown_tier_and_missing_email(self, app):
        with app.app_context():
            with pytest.raises(SemanticError):
                _issue(tier="Platinum")
            with pytest.raises(SemanticError):
                _issue(email="  ")

    def test_extend_adds_interval_to_existing_end(self, app):
        with app.app_context():
            license = _issue()
            db.session.commit()
            much_later = NOW + datetime.timedelta(days=500)
            # Renewed in its grace period: still anchored on the old end.
            licensing.extend_license(license.id, now=much_later)
            assert as_utc(license.valid_until) == NOW.replace(year=2028)
            assert license.status == LICENSE_ACTIVE

    def test_extend_missing_license(self, app):
        with app.app_context():
            assert licensing.extend_license(999) is None


# ============================================================================
# License status evaluation
# ============================================================================


class TestLicenseStatus:
    def _license(self, status=LICENSE_ACTIVE, valid_until=NOW):
        return License(status=status, valid_until=valid_until, grace_period_days=7)

    def test_active_until_valid_until(self):
        assert licensing.evaluate_status(self._license(), NOW) == LICENSE_ACTIVE

    def test_grace_then_expired(self):
        license = self._license()
        assert licensing.evaluate_status(license, NOW + datetime.timedelta(days=3)) == LICENSE_GRACE_PERIOD
        assert licensing.evaluate_status(license, NOW + datetime.timedelta(days=8)) == LICENSE_EXPIRED

    def test_admin_states_untouched(self):
        later = NOW + datetime.timedelta(days=30)
        assert licensing.evaluate_status(self._license(LICENSE_SUSPENDED), later) == LICENSE_SUSPENDED
        assert licensing.evaluate_status(self._license(LICENSE_REVOKED), later) == LICENSE_REVOKED
        assert (
            licensing.evaluate_status(self._license(LICENSE_PENDING_ACTIVATION), later)
            == LICENSE_PENDING_ACTIVATION
        )

    def test_unlimited(self):
        license = self._license(valid_until=None)
        assert licensing.evaluate_status(license, NOW.replace(year=2099)) == LICENSE_ACTIVE

    def test_refresh_all_statuses(self, app):
        with app.app_context():
            license = _issue()
            db.session.commit()
            after_expiry = as_utc(license.valid_until) + datetime.timedelta(days=2)
            assert licensing.refresh_all_statuses(after_expiry) == 1
            assert db.session.get(License, license.id).status == LICENSE_GRACE_PERIOD
            assert licensing.refresh_all_statuses(after_expiry + datetime.timedelta(days=10)) == 1
            assert db.session.get(License, license.id).status == LICENSE_EXPIRED


class TestAdminTransitions:
    def test_suspend_and_reactivate(self, app):
        with app.app_context():
            license = _issue(now=utc_now())
            db.session.commit()
            licensing.suspend_license(license.id, "chargeback")
            assert license.status == LICENSE_SUSPENDED
            licensing.reactivate_license(license.id)
            assert license.status == LICENSE_ACTIVE
            actions = [a.action for a in AuditLog.query.order_by(AuditLog.id).all()]
            assert actions == ["license_suspended", "license_reactivated"]

    def test_revoked_is_terminal(self, app):
        with app.app_context():
            license = _issue()
            db.session.commit()
            licensing.revoke_license(license.id, "fraud")
            with pytest.raises(SemanticError):
                licensing.suspend_license(license.id, "again")
            with pytest.raises(SemanticError):
                licensing.reactivate_license(license.id)

    def test_missing_license(self, app):
        with app.app_context():
            with pytest.raises(SemanticError):
                licensing.revoke_license(42, "nope")


# ============================================================================
# Subscription ledger
# ============================================================================


class TestSubscriptionLedger:
    def test_unique_provider_subscription_id(self, app):
        with app.app_context():
            _make_subscription()
            license = _issue(email="other@b.com", sub_id="sub_test")
            with pytest.raises(AlreadyProcessed):
                subscriptions.create_subscription(LicenseSubscription(
                    license_id=license.id,
                    provider=PROVIDER_STRIPE,
                    provider_subscription_id="sub_test",
                    tier=TIER_STANDARD,
                    customer_email="other@b.com",
                    amount=Decimal("299.00"),
                    currency="USD",
                    current_period_start=NOW,
                    current_period_end=NOW.replace(year=2027),
                ))
            assert LicenseSubscription.query.count() == 1
            # The whole unit of work was rolled back, including the new license.
            assert License.query.filter_by(customer_email="other@b.com").count() == 0

    def test_advance_period_is_monotonic(self, app):
        with app.app_context():
            _, sub = _make_subscription()
            end = as_utc(sub.current_period_end)
            subscriptions.advance_period(sub.id, end, add_interval(end, "year"))
            assert as_utc(sub.current_period_end) == NOW.replace(year=2028)
            with pytest.raises(StalePeriodError):
                subscriptions.advance_period(sub.id, NOW, NOW.replace(year=2027))

    def test_increment_payment_count(self, app):
        with app.app_context():
            _, sub = _make_subscription()
            assert subscriptions.increment_payment_count(sub.id) == 1
            assert subscriptions.increment_payment_count(sub.id) == 2
            audit = AuditLog.query.filter_by(action="subscription_payment_counted").count()
            assert audit == 2

    def test_failure_then_successful_retry(self, app):
        with app.app_context():
            _, sub = _make_subscription()
            assert subscriptions.record_failure(sub.id, "card_declined") is True
            assert sub.status == SUB_PAST_DUE
            assert sub.failure_count == 1
            assert sub.last_failure_reason == "card_declined"
            subscriptions.increment_payment_count(sub.id)
            assert sub.status == SUB_ACTIVE
            assert sub.failure_count == 0
            assert sub.last_failure_reason is None

    def test_stale_failure_ignored(self, app):
        with app.app_context():
            _, sub = _make_subscription()
            old_period_end = NOW - datetime.timedelta(days=1)
            assert subscriptions.record_failure(sub.id, "late", period_end=old_period_end) is False
            assert sub.status == SUB_ACTIVE

    def test_soft_cancel_keeps_access_until_period_end(self, app):
        with app.app_context():
            license, sub = _make_subscription()
            with patch.object(stripe.Subscription, "modify") as modify, \
                    patch.object(stripe.Subscription, "cancel") as cancel:
                subscriptions.cancel_subscription(sub.id, cancel_at_period_end=True)
            modify.assert_called_once_with("sub_test", cancel_at_period_end=True)
            cancel.assert_not_called()
            db.session.commit()
            assert sub.status == SUB_ACTIVE
            assert sub.auto_renew is False
            assert sub.cancelled_at is not None
            assert as_utc(sub.cancel_at_period_end) == as_utc(sub.current_period_end)
            period_end = as_utc(sub.current_period_end)
            assert licensing.evaluate_status(license, period_end) == LICENSE_ACTIVE
            assert licensing.evaluate_status(
                license, period_end + datetime.timedelta(days=8)
            ) == LICENSE_EXPIRED
            assert subscriptions.expire_lapsed_subscriptions(period_end + datetime.timedelta(days=1)) == 1
            assert db.session.get(LicenseSubscription, sub.id).status == SUB_EXPIRED

    def test_immediate_cancel_calls_provider_cancel(self, app):
        with app.app_context():
            _, sub = _make_subscription()
            with patch.object(stripe.Subscription, "cancel") as cancel:
                subscriptions.cancel_subscription(sub.id, cancel_at_period_end=False)
            cancel.assert_called_once_with("sub_test")
            assert sub.status == SUB_CANCELLED

    def test_provider_failure_leaves_subscription_untouched(self, app):
        from services.errors import GatewayError

        with app.app_context():
            _, sub = _make_subscription()
            with patch.object(stripe.Subscription, "cancel", side_effect=stripe.APIConnectionError("down")):
                with pytest.raises(GatewayError):
                    subscriptions.cancel_subscription(sub.id, cancel_at_period_end=False)
            assert sub.status == SUB_ACTIVE
            assert sub.auto_renew is True


# ============================================================================
# Payment ledger
# ============================================================================


class TestPaymentLedger:
    def test_duplicate_payment_rolls_back(self, app):
        with app.app_context():
            _, sub = _make_subscription()
            payments.record_payment(_payment(sub, "in_1"))
            db.session.commit()
            with pytest.raises(AlreadyProcessed) as exc:
                payments.record_payment(_payment(sub, "in_1"))
            assert exc.value.what == "payment"
            assert LicensePayment.query.count() == 1
            assert payments.payment_exists(PROVIDER_STRIPE, "in_1")
            assert not payments.payment_exists(PROVIDER_STRIPE, "in_2")

    def test_paid_at_defaults_for_successful_rows(self, app):
        with app.app_context():
            _, sub = _make_subscription()
            row = payments.record_payment(_payment(sub, "in_2"))
            assert row.paid_at is not None

    def test_refund_appends_row(self, app):
        with app.app_context():
            _, sub = _make_subscription()
            original = payments.record_payment(_payment(sub, "in_1"))
            db.session.commit()
            refund = payments.record_refund(original.id, Decimal("100.00"), "re_1", "partial")
            db.session.commit()
            assert refund.status == PAYMENT_REFUNDED
            assert refund.refund_of_id == original.id
            assert refund.payment_type == "refund"
            assert db.session.get(LicensePayment, original.id).status == PAYMENT_SUCCEEDED
            assert payments.succeeded_count(sub.id) == 1

    def test_refund_validation(self, app):
        with app.app_context():
            _, sub = _make_subscription()
            original = payments.record_payment(_payment(sub, "in_1"))
            db.session.commit()
            with pytest.raises(SemanticError):
                payments.record_refund(original.id, Decimal("500.00"), "re_2")
            with pytest.raises(SemanticError):
                payments.record_refund(9999, None, "re_3")

    def test_refunds_never_exceed_charge(self, app):
        with app.app_context():
            _, sub = _make_subscription()
            original = payments.record_payment(_payment(sub, "in_1"))
            db.session.commit()
            payments.record_refund(original.id, Decimal("200.00"), "re_1")
            db.session.commit()
            with pytest.raises(SemanticError):
                payments.record_refund(original.id, Decimal("100.00"), "re_2")
            # Without an amount only the remainder is refunded.
            rest = payments.record_refund(original.id, None, "re_3")
            db.session.commit()
            assert rest.amount == Decimal("99.00")
            assert payments.refunded_total(original.id) == Decimal("299.00")
            with pytest.raises(SemanticError):
                payments.record_refund(original.id, Decimal("0.01"), "re_4")
            assert LicensePayment.query.filter_by(refund_of_id=original.id).count() == 2


# ============================================================================
# Pending checkouts
# ============================================================================


class TestPendingCheckouts:
    def _save(self):
        return pending_checkouts.save_pending_checkout(
            "razorpay", "order_1", TIER_STANDARD, "a@b.com", "Ann", None, None,
            Decimal("24817.00"), "INR",
        )

    def test_lookup_until_expiry(self, app):
        with app.app_context():
            self._save()
            assert pending_checkouts.get_pending_checkout("razorpay", "order_1").tier == TIER_STANDARD
            later = utc_now() + datetime.timedelta(hours=2)
            assert pending_checkouts.get_pending_checkout("razorpay", "order_1", now=later) is None
            assert pending_checkouts.get_pending_checkout("razorpay", "order_2") is None

    def test_purge(self, app):
        with app.app_context():
            self._save()
            assert pending_checkouts.purge_expired(utc_now()) == 0
            assert pending_checkouts.purge_expired(utc_now() + datetime.timedelta(hours=2)) == 1
            assert PendingCheckout.query.count() == 0


# ============================================================================
# Notifications
# ============================================================================


def _email_config(enabled=True):
    return EmailConfig(
        enabled=enabled,
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="user",
        smtp_password="pass",
        sender="licenses@example.com",
        operator_cc="ops@example.com",
    )


NOTICE = Notice(
    kind=NOTICE_PURCHASE_CONFIRMED,
    email="a@b.com",
    name="Ann",
    tier=TIER_STANDARD,
    license_key="ALG-STD-AAAA-2603-BBBB",
    valid_until=NOW,
)


class TestNotifications:
    def test_disabled_email_sends_nothing(self):
        with patch("services.notifications.send_email") as send:
            Notifier(_email_config(enabled=False), "Portal").send(NOTICE)
        send.assert_not_called()

    def test_purchase_email(self):
        with patch("services.notifications.send_email") as send:
            Notifier(_email_config(), "Portal").send(NOTICE)
        _, subject, recipient, cc, body = send.call_args.args
        assert subject == "Your Portal Standard license"
        assert recipient == "a@b.com"
        assert cc == "ops@example.com"
        assert "ALG-STD-AAAA-2603-BBBB" in body
        assert "2026-03-15" in body

    def test_renewal_email_masks_key(self):
        notice = Notice(
            kind="license_renewed", email="a@b.com", name="Ann", tier=TIER_STANDARD,
            license_key="ALG-STD-AAAA-2603-BBBB", valid_until=NOW,
            amount=Decimal("299.00"), currency="USD",
        )
        subject, body = Notifier(_email_config(), "Portal").license_renewed(notice)
        assert "ALG-STD-AAAA-2603-BBBB" not in body
        assert "299.00 USD" in body

    def test_dispatcher_swallows_mailer_errors(self, caplog):
        class FailingNotifier:
            def send(self, notice):
                raise MailerError("smtp down")

        dispatcher = NotificationDispatcher(FailingNotifier(), max_workers=1)
        dispatcher.dispatch([NOTICE])
        dispatcher.shutdown()
        assert "Could not send purchase_confirmed email" in caplog.text


# ============================================================================
# CLI
# ============================================================================


class TestCLI:
    def test_issue_trial(self, app, notices):
        runner = CliRunner()
        with app.app_context():
            result = runner.invoke(cli, ["issue-trial", "t@example.com", "Tess", "--company", "Acme"])
            assert result.exit_code == 0, result.output
            license = License.query.one()
            assert license.tier == TIER_TRIAL
            assert license.key in result.output
        assert notices.kinds() == [NOTICE_PURCHASE_CONFIRMED]

    def test_suspend_and_show(self, app):
        runner = CliRunner()
        with app.app_context():
            license = _issue(now=utc_now())
            db.session.commit()
            result = runner.invoke(cli, ["suspend", str(license.id), "--reason", "chargeback"])
            assert result.exit_code == 0, result.output
            assert "suspended" in result.output
            result = runner.invoke(cli, ["show", license.key])
            assert result.exit_code == 0
            assert license.key not in result.output
            assert "Status:      suspended" in result.output

    def test_errors_exit_non_zero(self, app):
        runner = CliRunner()
        with app.app_context():
            result = runner.invoke(cli, ["revoke", "123", "--reason", "x"])
        assert result.exit_code == 1
        assert "License 123 not found" in result.output

    def test_cancel_subscription_local_only(self, app, notices):
        runner = CliRunner()
        with app.app_context():
            _, sub = _make_subscription()
            result = runner.invoke(cli, ["cancel-subscription", str(sub.id), "--local-only"])
            assert result.exit_code == 0, result.output
            sub = db.session.get(LicenseSubscription, sub.id)
            assert sub.status == SUB_ACTIVE
            assert sub.auto_renew is False
        assert notices.kinds() == ["subscription_cancelled"]

    def test_record_refund(self, app):
        runner = CliRunner()
        with app.app_context():
            _, sub = _make_subscription()
            original = payments.record_payment(_payment(sub, "in_1"))
            db.session.commit()
            result = runner.invoke(
                cli, ["record-refund", str(original.id), "--refund-id", "re_9", "--amount", "50"]
            )
            assert result.exit_code == 0, result.output
            assert LicensePayment.query.filter_by(status=PAYMENT_REFUNDED).count() == 1

    def test_refresh_status(self, app):
        runner = CliRunner()
        with app.app_context():
            _issue(now=NOW - datetime.timedelta(days=400))
            db.session.commit()
            result = runner.invoke(cli, ["refresh-status"])
            assert result.exit_code == 0
            assert "Updated 1 license(s)" in result.output
