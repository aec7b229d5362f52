"""Dunning cycle tests with an in-memory shop and a mocked Brevo client."""

import threading
from dataclasses import replace
from unittest.mock import Mock, patch

import pytest

from agents.shop_dunning.dto import DunningStage, Order, OrderOutcome
from agents.shop_dunning.errors import ApiRequestError, AuthenticationError
from agents.shop_dunning.mailer import DunningMailer
from agents.shop_dunning.playbooks import DunningPlaybook
from agents.shop_dunning.templates import TemplateEngine
from backend.core.observability.logging import _context
from backend.integrations.brevo_client import BrevoResponse

DAY = 24 * 60 * 60
NOW = 1_750_000_000


class FakeShop:
    """In-memory stand-in for the Shopware client of one tenant."""

    def __init__(self, payloads, fail_download=False, fail_update=False):
        self.payloads = {p["id"]: p for p in payloads}
        self.fail_download = fail_download
        self.fail_update = fail_update
        self.updates = []
        self.downloads = []
        self.closed = False
        self.search_error = None

    def sales_channel_id(self):
        return "98432def39fc4624b33213a56b8c944d"

    def iter_reminded_orders(self, channel_id, page_size=50):
        if self.search_error:
            raise self.search_error
        for payload in list(self.payloads.values()):
            yield Order.from_api(payload)

    def download_document(self, document_id, deep_link_code=None):
        self.downloads.append(document_id)
        if self.fail_download:
            raise ApiRequestError("Failed to request document after 3 attempts", 503)
        return b"%PDF-" + document_id.encode()

    def update_order(self, order_id, tags=None, custom_fields=None):
        if self.fail_update:
            raise ApiRequestError("PATCH failed", 500)
        self.updates.append((order_id, tags, custom_fields))
        payload = self.payloads[order_id]
        payload["tags"] = (payload.get("tags") or []) + (tags or [])
        payload["customFields"] = custom_fields

    def close(self):
        self.closed = True


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def brevo():
    client = Mock()
    client.send_transactional.return_value = BrevoResponse(success=True, message_id="m")
    return client


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def build(tmp_path, brevo, clock, sleeps):
    """Build a playbook serving the given shops (tenant label -> FakeShop)."""

    def _build(shops, dry_run=False):
        engine = TemplateEngine(tmp_path / "templates")
        return DunningPlaybook(
            client_factory=lambda tenant: shops[tenant.label],
            mailer_factory=lambda tenant: DunningMailer(tenant, brevo, engine),
            dry_run=dry_run,
            dry_run_dir=tmp_path / "dry-run",
            page_size=50,
            order_delay_ms=50,
            tenant_delay_ms=100,
            marker_prefix="dunning",
            ignore_tag="Mahnlauf ignorieren",
            legacy_tag_markers=True,
            clock=clock,
            sleep=sleeps.append,
        )

    return _build


def outcomes(result):
    return {k.value: v for k, v in result.tenants[0].outcomes.items()}


class TestOrderOutcomes:
    """Single-cycle behaviour per order."""

    def test_first_notice_sent_and_recorded(self, build, tenant, make_payload, brevo):
        shop = FakeShop([make_payload(custom_fields={"existing": "keep"})])

        result = build({tenant.label: shop}).run_cycle([tenant])

        assert outcomes(result) == {"sent": 1}
        assert brevo.send_transactional.call_count == 1
        kwargs = brevo.send_transactional.call_args[1]
        assert kwargs["subject"] == "Zahlungserinnerung für Bestellung 10001"
        assert kwargs["attachments"][0].content == b"%PDF-doc-o1"

        order_id, tags, custom_fields = shop.updates[0]
        assert order_id == "o1"
        assert tags == [{"name": "Billing: ZE"}]
        assert custom_fields == {"existing": "keep", "dunning_ze_sent_at": NOW}
        assert shop.closed

    def test_no_documents(self, build, tenant, make_payload, brevo):
        shop = FakeShop([make_payload(documents=[])])

        result = build({tenant.label: shop}).run_cycle([tenant])

        assert outcomes(result) == {"no_documents": 1}
        brevo.send_transactional.assert_not_called()
        assert shop.updates == []

    def test_missing_invoice_notifies_contact(self, build, tenant, make_payload, brevo):
        docs = [{"id": "d1", "documentType": {"technicalName": "delivery_note"}}]
        shop = FakeShop([make_payload(documents=docs)])

        result = build({tenant.label: shop}).run_cycle([tenant])

        assert outcomes(result) == {"missing_invoice": 1}
        kwargs = brevo.send_transactional.call_args[1]
        assert kwargs["to"] == "billing@shop.example.com"
        assert kwargs["subject"] == "Order without Invoice: 10001"
        assert shop.updates == []

    def test_paid_order_skipped(self, build, tenant, make_payload, brevo):
        shop = FakeShop([make_payload(payment_state="paid")])

        result = build({tenant.label: shop}).run_cycle([tenant])

        assert outcomes(result) == {"paid": 1}
        brevo.send_transactional.assert_not_called()

    def test_not_yet_due(self, build, tenant, make_payload, brevo):
        payload = make_payload(custom_fields={"dunning_ze_sent_at": NOW - 3 * DAY})
        shop = FakeShop([payload])

        result = build({tenant.label: shop}).run_cycle([tenant])

        assert outcomes(result) == {"no_action": 1}
        assert shop.downloads == []

    def test_ignored_order_skipped(self, build, tenant, make_payload, brevo):
        shop = FakeShop([make_payload(tags=["Mahnlauf ignorieren"])])

        result = build({tenant.label: shop}).run_cycle([tenant])

        assert outcomes(result) == {"no_action": 1}
        brevo.send_transactional.assert_not_called()

    def test_second_stage_after_due_days(self, build, tenant, make_payload):
        payload = make_payload(
            tags=["Billing: ZE"], custom_fields={"dunning_ze_sent_at": NOW - 15 * DAY}
        )
        shop = FakeShop([payload])

        result = build({tenant.label: shop}).run_cycle([tenant])

        assert outcomes(result) == {"sent": 1}
        _, tags, custom_fields = shop.updates[0]
        assert tags == [{"name": "Billing: Mahnung 1"}]
        assert custom_fields["dunning_ze_sent_at"] == NOW - 15 * DAY
        assert custom_fields["dunning_mahnung1_sent_at"] == NOW

    def test_missing_customer_email_fails_order(self, build, tenant, make_payload, brevo):
        shop = FakeShop([make_payload(email=None)])

        result = build({tenant.label: shop}).run_cycle([tenant])

        assert outcomes(result) == {"failed": 1}
        brevo.send_transactional.assert_not_called()
        assert shop.updates == []

    def test_missing_template_fails_order(self, build, tenant, make_payload, brevo):
        broken = replace(
            tenant, templates={**tenant.templates, DunningStage.STAGE_1: "nope.html"}
        )
        shop = FakeShop([make_payload()])

        result = build({broken.label: shop}).run_cycle([broken])

        assert outcomes(result) == {"failed": 1}
        brevo.send_transactional.assert_not_called()

    def test_download_failure_isolated(self, build, tenant, make_payload, brevo):
        shop = FakeShop(
            [make_payload(order_id="o1"), make_payload(order_id="o2", order_number="10002")],
            fail_download=True,
        )

        result = build({tenant.label: shop}).run_cycle([tenant])

        assert outcomes(result) == {"failed": 2}
        assert shop.downloads == ["doc-o1", "doc-o2"]
        assert result.success

    def test_marker_update_failure_reports_failed(self, build, tenant, make_payload, brevo):
        shop = FakeShop([make_payload()], fail_update=True)

        result = build({tenant.label: shop}).run_cycle([tenant])

        assert outcomes(result) == {"failed": 1}
        assert brevo.send_transactional.call_count == 1

    def test_delay_between_orders_and_tenants(self, build, tenant, make_payload, sleeps):
        other = replace(tenant, sales_channel_id="0" * 32)
        shops = {
            tenant.label: FakeShop(
                [make_payload(order_id="o1"), make_payload(order_id="o2", order_number="10002")]
            ),
            other.label: FakeShop([make_payload(order_id="o3", order_number="10003")]),
        }

        build(shops).run_cycle([tenant, other])

        assert sleeps == [0.05, 0.1]


class TestAcrossCycles:
    """Properties that only show over several cycles."""

    def test_missing_invoice_never_writes_marker(self, build, tenant, make_payload, brevo, clock):
        docs = [{"id": "d1", "documentType": {"technicalName": "credit_note"}}]
        shop = FakeShop([make_payload(documents=docs)])
        playbook = build({tenant.label: shop})

        for _ in range(3):
            assert outcomes(playbook.run_cycle([tenant])) == {"missing_invoice": 1}
            clock.now += 30 * DAY

        assert shop.updates == []
        assert brevo.send_transactional.call_count == 3

    def test_delivery_failure_leaves_markers_and_retries(
        self, build, tenant, make_payload, brevo, clock
    ):
        shop = FakeShop([make_payload()])
        playbook = build({tenant.label: shop})
        brevo.send_transactional.return_value = BrevoResponse(
            success=False, status_code=503, error="Brevo API error: 503"
        )

        assert outcomes(playbook.run_cycle([tenant])) == {"failed": 1}
        assert shop.updates == []

        brevo.send_transactional.return_value = BrevoResponse(success=True, message_id="m")
        clock.now += 60
        assert outcomes(playbook.run_cycle([tenant])) == {"sent": 1}

        subjects = [c[1]["subject"] for c in brevo.send_transactional.call_args_list]
        assert subjects == ["Zahlungserinnerung für Bestellung 10001"] * 2
        message_ids = {c[1]["message_id"] for c in brevo.send_transactional.call_args_list}
        assert len(message_ids) == 1

    def test_each_stage_sent_once(self, build, tenant, make_payload, brevo, clock):
        shop = FakeShop([make_payload()])
        playbook = build({tenant.label: shop})

        for _ in range(8):
            playbook.run_cycle([tenant])
            clock.now += 7 * DAY

        subjects = [c[1]["subject"] for c in brevo.send_transactional.call_args_list]
        assert subjects == [
            "Zahlungserinnerung für Bestellung 10001",
            "Erste Mahnung für Bestellung 10001",
            "Zweite Mahnung für Bestellung 10001",
        ]
        custom_fields = shop.payloads["o1"]["customFields"]
        assert custom_fields["dunning_ze_sent_at"] == NOW
        assert custom_fields["dunning_mahnung1_sent_at"] == NOW + 14 * DAY
        assert custom_fields["dunning_mahnung2_sent_at"] == NOW + 28 * DAY


class TestDryRun:
    """Dry-run writes artifacts and nothing else."""

    def test_dry_run_saves_artifacts(self, build, tenant, make_payload, brevo, tmp_path):
        shop = FakeShop([make_payload()])

        result = build({tenant.label: shop}, dry_run=True).run_cycle([tenant])

        assert result.dry_run
        assert outcomes(result) == {"dry_run": 1}
        brevo.send_transactional.assert_not_called()
        assert shop.updates == []

        directory = tmp_path / "dry-run" / tenant.label
        assert (directory / "10001_doc-o1.pdf").read_bytes() == b"%PDF-doc-o1"
        html = (directory / "10001_doc-o1_ze.html").read_text(encoding="utf-8")
        assert "Erika Mustermann" in html

    def test_dry_run_missing_invoice_only_logged(self, build, tenant, make_payload, brevo):
        docs = [{"id": "d1", "documentType": {"technicalName": "delivery_note"}}]
        shop = FakeShop([make_payload(documents=docs)])

        result = build({tenant.label: shop}, dry_run=True).run_cycle([tenant])

        assert outcomes(result) == {"missing_invoice": 1}
        brevo.send_transactional.assert_not_called()


class TestTenantsAndCancellation:
    """Tenant isolation and cooperative cancellation."""

    def test_tenant_error_does_not_abort_cycle(self, build, tenant, make_payload, brevo):
        other = replace(tenant, sales_channel_id="0" * 32)
        failing = FakeShop([make_payload()])
        failing.search_error = AuthenticationError("Failed to authenticate")
        healthy = FakeShop([make_payload(order_id="o9", order_number="10009")])

        result = build({tenant.label: failing, other.label: healthy}).run_cycle([tenant, other])

        assert result.tenants[0].error == "Failed to authenticate"
        assert result.tenants[1].count(OrderOutcome.SENT) == 1
        assert not result.success
        assert failing.closed and healthy.closed

    def test_mailer_factory_error_isolated(self, build, tenant, make_payload, brevo):
        other = replace(tenant, sales_channel_id="0" * 32)
        first = FakeShop([make_payload()])
        second = FakeShop([make_payload(order_id="o9", order_number="10009")])
        playbook = build({tenant.label: first, other.label: second})
        build_mailer = playbook.mailer_factory

        def mailer_factory(t):
            if t.label == tenant.label:
                # Non-ASCII API key rejected while building request headers
                raise UnicodeEncodeError("ascii", "schlüssel", 4, 5, "ordinal not in range(128)")
            return build_mailer(t)

        playbook.mailer_factory = mailer_factory
        result = playbook.run_cycle([tenant, other])

        assert "ordinal not in range" in result.tenants[0].error
        assert result.tenants[1].count(OrderOutcome.SENT) == 1
        assert first.closed and second.closed
        assert first.updates == []

    def test_client_factory_error_isolated(self, build, tenant, make_payload, brevo):
        other = replace(tenant, sales_channel_id="0" * 32)
        second = FakeShop([make_payload(order_id="o9", order_number="10009")])
        playbook = build({other.label: second})
        mailer_factory = Mock(side_effect=playbook.mailer_factory)
        playbook.mailer_factory = mailer_factory

        result = playbook.run_cycle([tenant, other])

        assert result.tenants[0].error
        assert result.tenants[1].count(OrderOutcome.SENT) == 1
        assert mailer_factory.call_count == 1
        assert second.closed

    def test_cycle_context_cleared(self, build, tenant, make_payload):
        build({tenant.label: FakeShop([make_payload()])}).run_cycle([tenant])

        assert getattr(_context, "cycle_id", None) is None
        assert getattr(_context, "tenant", None) is None

    def test_cycle_context_cleared_on_unexpected_error(self, build, tenant):
        playbook = build({})

        with patch.object(playbook, "process_tenant", side_effect=RuntimeError("unexpected")):
            with pytest.raises(RuntimeError):
                playbook.run_cycle([tenant])

        assert getattr(_context, "cycle_id", None) is None

    def test_cancel_before_start(self, build, tenant, make_payload, brevo):
        cancel = threading.Event()
        cancel.set()

        result = build({tenant.label: FakeShop([make_payload()])}).run_cycle([tenant], cancel)

        assert result.cancelled
        assert result.tenants == []
        brevo.send_transactional.assert_not_called()

    def test_cancel_between_orders(self, build, tenant, make_payload, brevo):
        cancel = threading.Event()
        brevo.send_transactional.side_effect = lambda **kwargs: (
            cancel.set() or BrevoResponse(success=True, message_id="m")
        )
        shop = FakeShop(
            [make_payload(order_id="o1"), make_payload(order_id="o2", order_number="10002")]
        )

        result = build({tenant.label: shop}).run_cycle([tenant], cancel)

        assert result.cancelled
        assert result.tenants[0].cancelled
        assert outcomes(result) == {"sent": 1}
        assert [u[0] for u in shop.updates] == ["o1"]

    def test_cycle_result_to_dict(self, build, tenant, make_payload):
        result = build({tenant.label: FakeShop([make_payload()])}).run_cycle([tenant])

        data = result.to_dict()
        assert data["tenants"][0]["outcomes"] == {"sent": 1}
        assert data["cancelled"] is False
        assert data["cycle_id"]
