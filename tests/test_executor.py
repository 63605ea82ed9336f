"""
Executor tests: the reference PostgreSQL template end to end, plus small
templates for failure, dry-run and cancellation behaviour.
"""
import os

import pytest

from stackgraph.config import load_context_file, load_fixtures
from stackgraph.engine.executor import EVENT_RESOLVED, EVENT_SKIPPED, EVENT_START, Executor, run
from stackgraph.engine.expressions import COMPUTED
from stackgraph.errors import (
    CycleDetectedError,
    PostconditionViolationError,
    ProvisioningError,
    TypeMismatchError,
    UnresolvedReferenceError,
)
from stackgraph.models.context import deep_merge
from stackgraph.parsers import load_template
from stackgraph.parsers.document import build_template
from stackgraph.providers import MemoryProvider, NotFound

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")
TEMPLATES = ["postgresql.yaml", "postgresql.tf"]


def context(**overrides):
    return deep_merge(load_context_file(os.path.join(FIXTURES, "context.yaml")), overrides)


def provider():
    return MemoryProvider(load_fixtures(os.path.join(FIXTURES, "lookups.yaml")))


@pytest.fixture(params=TEMPLATES)
def template(request):
    return load_template([os.path.join(FIXTURES, request.param)], quiet=True)


class FailingProvider(MemoryProvider):
    def __init__(self, fail_kind, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_kind = fail_kind

    def create_or_update(self, request):
        if request.kind == self.fail_kind:
            raise RuntimeError("quota exceeded")
        return super().create_or_update(request)


# --------------------------------------------------------- reference template
class TestReferenceTemplate:
    def test_standalone_has_no_secondary(self, template):
        result = run(template, provider(), context(architecture="standalone"), quiet=True)
        assert result.instance_count("aws_db_instance.primary") == 1
        assert result.instance_count("aws_db_instance.secondary") == 0
        assert result.skipped["aws_db_instance.secondary"] == "count is 0"
        assert result.skipped["aws_service_discovery_service.secondary"] == "count is 0"
        assert result.skipped["aws_security_group_rule.replication"] == "count is 0"
        assert result.skipped["aws_service_discovery_instance.secondary"] == (
            "all dependencies have zero instances"
        )

    def test_replication_has_exactly_one_secondary(self, template):
        result = run(template, provider(), context(architecture="replication"), quiet=True)
        assert result.instance_count("aws_db_instance.secondary") == 1
        assert result.instance_count("aws_service_discovery_service.secondary") == 1
        assert result.instance_count("aws_service_discovery_instance.secondary") == 1
        assert result.instance_count("aws_security_group_rule.replication") == 1
        assert not result.skipped

        secondary = result.resources["aws_db_instance.secondary[0]"]
        primary = result.resources["aws_db_instance.primary"]
        assert secondary.get("replicate_source_db") == primary.get("identifier")
        discovery = result.resources["aws_service_discovery_instance.secondary"]
        assert discovery.get("instance_id") == secondary.get("resource_id")
        assert discovery.get("attributes") == {"AWS_INSTANCE_CNAME": secondary.get("address")}

    def test_storage_and_backups(self, template):
        ctx = context(architecture="replication", storage={"size": 20480})
        result = run(template, provider(), ctx, quiet=True)
        primary = result.resources["aws_db_instance.primary"]
        secondary = result.resources["aws_db_instance.secondary[0]"]
        assert primary.get("allocated_storage") == 20
        assert primary.get("storage_type") == "gp2"
        assert primary.get("backup_retention_period") == 1
        assert secondary.get("backup_retention_period") == 0

    def test_allocated_storage_follows_context(self, template):
        result = run(template, provider(), context(storage={"size": 40960}), quiet=True)
        assert result.resources["aws_db_instance.primary"].get("allocated_storage") == 40

    def test_identifiers_and_tags(self, template):
        result = run(template, provider(), context(), quiet=True)
        primary = result.resources["aws_db_instance.primary"]
        assert primary.get("identifier") == "shop-prod-orders"
        assert primary.get("db_subnet_group_name") == "shop-prod-orders"
        assert primary.get("tags") == {"Project": "prj-01", "Environment": "env-01", "Resource": "res-01"}
        assert result.resources["aws_db_parameter_group.this"].get("family") == "postgres15"

    def test_generated_password_is_used_when_none_given(self, template):
        result = run(template, provider(), context(), quiet=True)
        generated = result.resources["random_password.master"].get("result")
        assert len(generated) == 16
        assert result.resources["aws_db_instance.primary"].get("password") == generated

    def test_given_password_wins(self, template):
        result = run(template, provider(), context(password="hunter22"), quiet=True)
        assert result.resources["aws_db_instance.primary"].get("password") == "hunter22"

    def test_outputs(self, template):
        result = run(template, provider(), context(), quiet=True)
        assert result.outputs["endpoint"].endswith(".rds.amazonaws.com:5432")
        assert result.outputs["replica_endpoint"] is None
        assert result.outputs["hostname"] == "primary.shop-prod-orders.db.internal"

    def test_dns_support_postcondition(self, template):
        with pytest.raises(PostconditionViolationError) as exc_info:
            run(template, provider(), context(infrastructure={"vpc_id": "vpc-nodns"}), quiet=True)
        err = exc_info.value
        assert err.message == "VPC needs to enable DNS support"
        assert err.address == "data.aws_vpc.selected"
        # the looked-up VPC stays in the partial result
        assert "data.aws_vpc.selected" in err.result.resources

    def test_replication_needs_multiple_subnets(self, template):
        fixtures = load_fixtures(os.path.join(FIXTURES, "lookups.yaml"))
        fixtures["aws_subnets"][0]["ids"] = ["subnet-aaa111"]

        standalone = run(template, MemoryProvider(fixtures), context(), quiet=True)
        assert standalone.instance_count("data.aws_subnets.selected") == 1

        with pytest.raises(PostconditionViolationError) as exc_info:
            run(template, MemoryProvider(fixtures), context(architecture="replication"), quiet=True)
        assert exc_info.value.message == "Replication mode needs multiple subnets"

    def test_rerun_is_idempotent(self, template):
        adapter = provider()
        first = run(template, adapter, context(), quiet=True)
        creates = list(adapter.actions("create"))
        second = run(template, adapter, context(), quiet=True)

        assert first.resources == second.resources
        assert first.outputs == second.outputs
        assert adapter.actions("create") == creates
        assert sorted(adapter.actions("noop")) == sorted(creates)

    def test_fresh_providers_agree(self, template):
        first = run(template, provider(), context(), quiet=True)
        second = run(template, provider(), context(), quiet=True)
        assert first.resources == second.resources

    def test_changed_context_updates_in_place(self, template):
        adapter = provider()
        first = run(template, adapter, context(), quiet=True)
        second = run(template, adapter, context(resources={"class": "db.m5.large"}), quiet=True)
        assert adapter.actions("update") == ["aws_db_instance.primary"]
        assert second.resources["aws_db_instance.primary"].get("resource_id") == (
            first.resources["aws_db_instance.primary"].get("resource_id")
        )

    def test_dry_run_never_mutates(self, template):
        adapter = provider()
        result = run(template, adapter, context(architecture="replication"), dry_run=True, quiet=True)
        assert adapter.actions("create") == []
        assert adapter.actions("update") == []
        assert adapter.actions("noop") == []
        assert adapter.objects == {}

        primary = result.resources["aws_db_instance.primary"]
        assert primary.planned
        assert primary.get("allocated_storage") == 20
        assert result.instance_count("aws_db_instance.secondary") == 1
        assert result.outputs["endpoint"] is COMPUTED
        # lookups still run in a plan
        assert not result.resources["data.aws_vpc.selected"].planned

    def test_parameters_drop_empty_values(self):
        template = load_template([os.path.join(FIXTURES, "postgresql.yaml")], quiet=True)
        result = run(template, provider(), context(), quiet=True)
        assert result.resources["aws_db_parameter_group.this"].get("parameter") == [
            {"name": "log_min_duration_statement", "value": "500"},
            {"name": "work_mem", "value": "16MB"},
        ]


# --------------------------------------------------------- failure handling
class TestFailures:
    def test_provisioning_error_keeps_partial_result(self, template):
        adapter = FailingProvider("aws_db_instance", load_fixtures(os.path.join(FIXTURES, "lookups.yaml")))
        with pytest.raises(ProvisioningError) as exc_info:
            run(template, adapter, context(), quiet=True)

        err = exc_info.value
        assert err.address == "aws_db_instance.primary"
        assert isinstance(err.cause, RuntimeError)
        assert isinstance(err.__cause__, RuntimeError)
        assert "quota exceeded" in str(err)

        resources = err.result.resources
        assert "aws_security_group.this" in resources
        assert "aws_db_parameter_group.this" in resources
        assert "aws_db_instance.primary" not in resources
        # nothing after the failing node was attempted
        assert "aws_service_discovery_instance.primary" not in err.result.order
        assert err.result.order[-1] == "aws_db_instance.primary"
        assert err.result.failed == "aws_db_instance.primary"
        assert err.result.status("aws_db_instance.primary") == "failed"
        assert err.result.status("aws_security_group.this") == "resolved"

    def test_lookup_miss_halts_before_any_create(self, template):
        adapter = provider()
        with pytest.raises(ProvisioningError) as exc_info:
            run(template, adapter, context(infrastructure={"vpc_id": "vpc-unknown"}), quiet=True)
        assert exc_info.value.address == "data.aws_vpc.selected"
        assert isinstance(exc_info.value.cause, NotFound)
        assert adapter.actions("create") == []

    def test_failed_instance_marks_its_node(self):
        template = build_template({"resource": {"aws_a": {"many": {
            "count": 2,
            "name": "node-${count.index}",
            "lifecycle": {"postcondition": [
                {"condition": '${self.name != "node-1"}', "error_message": "node-1 is reserved"},
            ]},
        }}}})
        with pytest.raises(PostconditionViolationError) as exc_info:
            run(template, MemoryProvider(), {}, quiet=True)
        result = exc_info.value.result
        assert result.failed == "aws_a.many[1]"
        assert result.status("aws_a.many") == "failed"
        assert not result.is_failed("aws_a.man")

    def test_graph_errors_come_before_provider_calls(self):
        template = build_template({
            "resource": {
                "aws_a": {"one": {"x": "${aws_b.two.id}"}},
                "aws_b": {"two": {"y": "${aws_a.one.id}"}},
            }
        })
        adapter = MemoryProvider()
        with pytest.raises(CycleDetectedError):
            Executor(template, adapter)
        assert adapter.calls == []

    def test_evaluation_errors_name_the_node(self):
        template = build_template({
            "resource": {
                "aws_a": {"one": {"name": "ok"}},
                "aws_b": {"two": {"size": "${var.missing.size}"}},
            }
        })
        with pytest.raises(ProvisioningError) as exc_info:
            run(template, MemoryProvider(), {})
        assert exc_info.value.address == "aws_b.two"
        assert isinstance(exc_info.value.cause, UnresolvedReferenceError)
        assert exc_info.value.result.instance_count("aws_a.one") == 1

    def test_non_bool_postcondition(self):
        template = build_template({
            "resource": {
                "aws_a": {"one": {"lifecycle": {"postcondition": [{"condition": "${self.name}"}]}, "name": "x"}},
            }
        })
        with pytest.raises(ProvisioningError) as exc_info:
            run(template, MemoryProvider(), {})
        assert isinstance(exc_info.value.cause, TypeMismatchError)

    def test_postcondition_message_can_interpolate(self):
        template = build_template({
            "resource": {
                "aws_a": {"one": {
                    "size": 5,
                    "lifecycle": {"postcondition": [{
                        "condition": "${self.size > 10}",
                        "error_message": "size ${self.size} is too small",
                    }]},
                }},
            }
        })
        with pytest.raises(PostconditionViolationError) as exc_info:
            run(template, MemoryProvider(), {})
        assert exc_info.value.message == "size 5 is too small"
        # the violating instance is kept for inspection
        assert exc_info.value.result.instance_count("aws_a.one") == 1


# --------------------------------------------------------- run control
class TestRunControl:
    def setup_method(self):
        self.template = build_template({
            "resource": {
                "aws_a": {"one": {}},
                "aws_b": {"two": {"after": "${aws_a.one.id}"}},
                "aws_c": {"three": {"after": "${aws_b.two.id}"}},
            }
        })

    def test_events_follow_execution_order(self):
        events = []
        run(self.template, MemoryProvider(), {}, on_event=lambda e, a, d: events.append((e, a)))
        assert [a for e, a in events if e == EVENT_START] == ["aws_a.one", "aws_b.two", "aws_c.three"]
        assert [a for e, a in events if e == EVENT_RESOLVED] == ["aws_a.one", "aws_b.two", "aws_c.three"]

    def test_skipped_event(self):
        template = build_template({"resource": {"aws_a": {"one": {"count": 0}}}})
        events = []
        run(template, MemoryProvider(), {}, on_event=lambda e, a, d: events.append((e, a, d)))
        assert (EVENT_SKIPPED, "aws_a.one", "count is 0") in events

    def test_cancel_between_nodes(self):
        adapter = MemoryProvider()
        executor = Executor(self.template, adapter, {})

        def on_event(event, address, detail):
            if event == EVENT_RESOLVED and address == "aws_a.one":
                executor.cancel()

        executor.on_event = on_event
        result = executor.run()
        assert result.cancelled
        assert result.order == ["aws_a.one"]
        assert adapter.actions("create") == ["aws_a.one"]
        assert result.outputs == {}

    def test_run_after_cancel_starts_fresh(self):
        adapter = MemoryProvider()
        executor = Executor(self.template, adapter, {})
        executor.cancel()
        assert executor.run().cancelled is False

        executor.on_event = lambda event, address, detail: executor.cancel()
        assert executor.run().order == ["aws_a.one"]

        executor.on_event = None
        result = executor.run()
        assert not result.cancelled
        assert result.order == ["aws_a.one", "aws_b.two", "aws_c.three"]

    def test_count_instances_are_indexed(self):
        template = build_template({
            "resource": {
                "aws_a": {"many": {"count": 3, "name": "node-${count.index}"}},
                "aws_b": {"sum": {"names": "${[for a in aws_a.many : a.name]}"}},
            }
        })
        result = run(template, MemoryProvider(), {})
        assert [r.address for r in result.instances["aws_a.many"]] == [
            "aws_a.many[0]",
            "aws_a.many[1]",
            "aws_a.many[2]",
        ]
        assert result.resources["aws_b.sum"].get("names") == ["node-0", "node-1", "node-2"]

    def test_for_each_instances(self):
        template = build_template({
            "resource": {
                "aws_subnet": {"zone": {"for_each": "${var.zones}", "cidr": "${each.value}", "az": "${each.key}"}},
            }
        })
        result = run(template, MemoryProvider(), {"zones": {"b": "10.0.2.0/24", "a": "10.0.1.0/24"}})
        assert list(result.resources) == ['aws_subnet.zone["a"]', 'aws_subnet.zone["b"]']
        assert result.resources['aws_subnet.zone["b"]'].get("cidr") == "10.0.2.0/24"

    def test_deferred_postcondition_in_dry_run(self):
        template = build_template({
            "resource": {
                "aws_a": {"one": {"lifecycle": {"postcondition": [
                    {"condition": '${self.id != ""}', "error_message": "id must be assigned"},
                ]}}},
            }
        })
        result = run(template, MemoryProvider(), {}, dry_run=True, quiet=True)
        assert result.deferred == {"aws_a.one": ["id must be assigned"]}

        applied = run(template, MemoryProvider(), {}, quiet=True)
        assert applied.deferred == {}
