"""
In-memory provider adapter tests.
"""
import pytest

from stackgraph.models.resource import ResourceNode
from stackgraph.providers import MemoryProvider, NotFound, ProviderAdapter, ProvisionRequest, get_provider


def request(kind, node_name, **attributes):
    node = ResourceNode(kind=kind, name=node_name)
    return ProvisionRequest(node=node, address=node.address, key=None, attributes=attributes)


class TestLookup:
    def setup_method(self):
        self.provider = MemoryProvider({
            "aws_vpc": [
                {"id": "vpc-1", "enable_dns_support": False, "tags": {"Name": "legacy"}},
                {"id": "vpc-2", "enable_dns_support": True, "tags": {"Name": "main", "Tier": "db"}},
            ]
        })

    def test_first_match_wins(self):
        assert self.provider.lookup("aws_vpc", {})["id"] == "vpc-1"

    def test_filter(self):
        assert self.provider.lookup("aws_vpc", {"id": "vpc-2"})["enable_dns_support"] is True

    def test_null_filters_are_ignored(self):
        assert self.provider.lookup("aws_vpc", {"id": "vpc-2", "cidr_block": None})["id"] == "vpc-2"

    def test_nested_filters_match_subsets(self):
        assert self.provider.lookup("aws_vpc", {"tags": {"Name": "main"}})["id"] == "vpc-2"

    def test_bools_do_not_match_numbers(self):
        with pytest.raises(NotFound):
            self.provider.lookup("aws_vpc", {"enable_dns_support": 1})

    def test_not_found(self):
        with pytest.raises(NotFound) as exc_info:
            self.provider.lookup("aws_subnets", {"vpc_id": "vpc-2"})
        assert exc_info.value.kind == "aws_subnets"

    def test_results_are_copies(self):
        record = self.provider.lookup("aws_vpc", {"id": "vpc-2"})
        record["tags"]["Name"] = "changed"
        assert self.provider.lookup("aws_vpc", {"id": "vpc-2"})["tags"]["Name"] == "main"


class TestCreateOrUpdate:
    def setup_method(self):
        self.provider = MemoryProvider(region="eu-west-1")

    def test_db_instance_values(self):
        values = self.provider.create_or_update(request("aws_db_instance", "primary", identifier="orders", port=5433))
        assert values["address"].startswith("orders.")
        assert values["address"].endswith(".eu-west-1.rds.amazonaws.com")
        assert values["endpoint"] == f"{values['address']}:5433"
        assert values["resource_id"].startswith("db-")
        assert values["arn"].startswith("arn:aws:db_instance:eu-west-1:")

    def test_random_password_honours_length(self):
        values = self.provider.create_or_update(request("random_password", "master", length=24))
        assert len(values["result"]) == 24

    def test_values_are_deterministic(self):
        other = MemoryProvider(region="eu-west-1")
        req = request("aws_security_group", "this", name="db")
        assert self.provider.create_or_update(req) == other.create_or_update(req)

    def test_noop_create_update(self):
        first = self.provider.create_or_update(request("aws_security_group", "this", name="db"))
        again = self.provider.create_or_update(request("aws_security_group", "this", name="db"))
        changed = self.provider.create_or_update(request("aws_security_group", "this", name="db2"))
        assert first == again == changed
        assert [action for action, _ in self.provider.calls] == ["create", "noop", "update"]
        assert self.provider.objects["aws_security_group.this"]["attributes"] == {"name": "db2"}


class TestRegistry:
    def test_get_provider(self):
        provider = get_provider("memory", region="ap-south-1")
        assert isinstance(provider, MemoryProvider)
        assert provider.region == "ap-south-1"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            get_provider("aws")

    def test_base_adapter_is_abstract(self):
        adapter = ProviderAdapter()
        with pytest.raises(NotImplementedError):
            adapter.lookup("aws_vpc", {})
        with pytest.raises(NotImplementedError):
            adapter.create_or_update(request("aws_a", "one"))
