"""
Graph builder and materializer tests.
"""
import pytest

from stackgraph.engine.executor import stable_topological_order
from stackgraph.engine.expressions import Scope
from stackgraph.engine.graph import build_graph
from stackgraph.engine.materializer import materialize
from stackgraph.errors import (
    CycleDetectedError,
    InvalidCountError,
    TemplateError,
    TypeMismatchError,
    UnknownReferenceError,
)
from stackgraph.parsers.document import build_template


def graph_of(doc):
    return build_graph(build_template(doc, "test.yaml"))


class TestGraphBuilder:
    def test_edges_are_inferred_from_references(self):
        graph = graph_of({
            "resource": {
                "aws_security_group": {"this": {"name": "db"}},
                "aws_db_instance": {"primary": {"vpc_security_group_ids": ["${aws_security_group.this.id}"]}},
            }
        })
        assert graph.dependencies("aws_db_instance.primary") == ["aws_security_group.this"]
        assert graph.dependents("aws_security_group.this") == ["aws_db_instance.primary"]

    def test_edges_through_locals(self):
        graph = graph_of({
            "locals": {"password": "${coalesce(var.password, random_password.master.result)}"},
            "resource": {
                "random_password": {"master": {"length": 16}},
                "aws_db_instance": {"primary": {"password": "${local.password}"}},
            },
        })
        assert graph.dependencies("aws_db_instance.primary") == ["random_password.master"]

    def test_data_references(self):
        graph = graph_of({
            "data": {"aws_vpc": {"selected": {"id": "vpc-1"}}},
            "resource": {"aws_security_group": {"this": {"vpc_id": "${data.aws_vpc.selected.id}"}}},
        })
        assert graph.dependencies("aws_security_group.this") == ["data.aws_vpc.selected"]

    def test_depends_on(self):
        graph = graph_of({
            "resource": {
                "aws_a": {"one": {}},
                "aws_b": {"two": {"depends_on": ["aws_a.one"]}},
            }
        })
        assert graph.dependencies("aws_b.two") == ["aws_a.one"]

    def test_mutual_reference_is_a_cycle(self):
        with pytest.raises(CycleDetectedError) as exc_info:
            graph_of({
                "resource": {
                    "aws_a": {"one": {"x": "${aws_b.two.id}"}},
                    "aws_b": {"two": {"y": "${aws_a.one.id}"}},
                }
            })
        assert "aws_a.one" in exc_info.value.cycle
        assert "aws_b.two" in exc_info.value.cycle

    def test_self_reference_is_a_cycle(self):
        with pytest.raises(CycleDetectedError):
            graph_of({"resource": {"aws_a": {"one": {"x": "${aws_a.one.id}"}}}})

    def test_unknown_node(self):
        with pytest.raises(UnknownReferenceError) as exc_info:
            graph_of({"resource": {"aws_a": {"one": {"x": "${aws_missing.node.id}"}}}})
        assert exc_info.value.source == "aws_a.one"
        assert exc_info.value.target == "aws_missing.node"

    def test_unknown_local(self):
        with pytest.raises(UnknownReferenceError):
            graph_of({"resource": {"aws_a": {"one": {"x": "${local.nope}"}}}})

    def test_local_cycle(self):
        with pytest.raises(CycleDetectedError):
            graph_of({
                "locals": {"a": "${local.b}", "b": "${local.a}"},
                "resource": {"aws_a": {"one": {"x": "${local.a}"}}},
            })

    def test_unknown_reference_in_output(self):
        with pytest.raises(UnknownReferenceError):
            graph_of({
                "resource": {"aws_a": {"one": {}}},
                "output": {"x": {"value": "${aws_b.two.id}"}},
            })

    def test_count_and_for_each_are_exclusive(self):
        with pytest.raises(TemplateError):
            build_template({"resource": {"aws_a": {"one": {"count": 1, "for_each": ["a"]}}}})

    def test_comprehension_variables_are_not_references(self):
        graph = graph_of({
            "resource": {"aws_a": {"one": {"names": '${[for s in var.names : upper(s)]}'}}}
        })
        assert graph.dependencies("aws_a.one") == []


class TestStableOrder:
    def test_ties_follow_declaration_order(self):
        graph = graph_of({
            "resource": {
                "aws_c": {"third": {}},
                "aws_a": {"first": {}},
                "aws_b": {"second": {}},
            }
        })
        assert stable_topological_order(graph) == ["aws_c.third", "aws_a.first", "aws_b.second"]

    def test_dependencies_come_first(self):
        graph = graph_of({
            "resource": {
                "aws_app": {"web": {"db": "${aws_db.main.id}"}},
                "aws_net": {"vpc": {}},
                "aws_db": {"main": {"vpc": "${aws_net.vpc.id}"}},
                "aws_log": {"sink": {}},
            }
        })
        assert stable_topological_order(graph) == [
            "aws_net.vpc",
            "aws_db.main",
            "aws_app.web",
            "aws_log.sink",
        ]

    def test_order_is_deterministic(self):
        doc = {
            "resource": {
                "aws_a": {"one": {}, "two": {"x": "${aws_a.one.id}"}},
                "aws_b": {"three": {}},
            }
        }
        orders = {tuple(stable_topological_order(graph_of(doc))) for _ in range(5)}
        assert len(orders) == 1


class TestMaterializer:
    def setup_method(self):
        self.template = build_template({
            "locals": {"replication": '${var.architecture == "replication"}'},
            "resource": {
                "aws_db_instance": {
                    "primary": {},
                    "secondary": {"count": "${local.replication ? 1 : 0}"},
                },
                "aws_service_discovery_instance": {
                    "secondary": {"instance_id": "${aws_db_instance.secondary[0].resource_id}"},
                },
                "aws_subnet": {
                    "zones": {"for_each": "${var.zones}"},
                },
            },
        })
        self.graph = build_graph(self.template)

    def _scope(self, **context):
        return Scope(context, self.template.locals)

    def test_count_from_context(self):
        node = self.graph.nodes["aws_db_instance.secondary"]
        replicated = materialize(node, self._scope(architecture="replication"), {})
        standalone = materialize(node, self._scope(architecture="standalone"), {})
        assert [i.key for i in replicated.instances] == [0]
        assert standalone.skipped
        assert standalone.reason == "count is 0"

    def test_bool_count(self):
        node = self.graph.nodes["aws_db_instance.secondary"]
        node.count = True
        assert [i.key for i in materialize(node, self._scope(), {}).instances] == [0]
        node.count = False
        assert materialize(node, self._scope(), {}).skipped

    def test_negative_count(self):
        node = self.graph.nodes["aws_db_instance.secondary"]
        node.count = -1
        with pytest.raises(InvalidCountError):
            materialize(node, self._scope(), {})

    def test_string_count_is_a_type_mismatch(self):
        node = self.graph.nodes["aws_db_instance.secondary"]
        node.count = "two"
        with pytest.raises(TypeMismatchError):
            materialize(node, self._scope(), {})

    def test_vacuous_skip(self):
        node = self.graph.nodes["aws_service_discovery_instance.secondary"]
        result = materialize(node, self._scope(), {"aws_db_instance.secondary": 0})
        assert result.skipped
        assert result.reason == "all dependencies have zero instances"

    def test_not_skipped_when_a_dependency_exists(self):
        node = self.graph.nodes["aws_service_discovery_instance.secondary"]
        result = materialize(node, self._scope(), {"aws_db_instance.secondary": 1})
        assert len(result.instances) == 1

    def test_node_without_dependencies_has_one_instance(self):
        node = self.graph.nodes["aws_db_instance.primary"]
        assert len(materialize(node, self._scope(), {}).instances) == 1

    def test_for_each_over_list(self):
        node = self.graph.nodes["aws_subnet.zones"]
        result = materialize(node, self._scope(zones=["b", "a", "b"]), {})
        assert [i.key for i in result.instances] == ["a", "b"]

    def test_for_each_over_map(self):
        node = self.graph.nodes["aws_subnet.zones"]
        result = materialize(node, self._scope(zones={"z2": "10.0.2.0/24", "z1": "10.0.1.0/24"}), {})
        assert [(i.key, i.each_value) for i in result.instances] == [
            ("z1", "10.0.1.0/24"),
            ("z2", "10.0.2.0/24"),
        ]

    def test_for_each_over_map_with_mixed_key_types(self):
        node = self.graph.nodes["aws_subnet.zones"]
        result = materialize(node, self._scope(zones={2: "b", "1": "a", "x": "c"}), {})
        assert [i.key for i in result.instances] == ["1", 2, "x"]

    def test_empty_for_each(self):
        node = self.graph.nodes["aws_subnet.zones"]
        result = materialize(node, self._scope(zones=[]), {})
        assert result.skipped
        assert result.reason == "for_each is empty"

    def test_deterministic(self):
        node = self.graph.nodes["aws_subnet.zones"]
        scope = self._scope(zones={"b": 1, "a": 2})
        assert materialize(node, scope, {}) == materialize(node, scope, {})
