"""
AWS capability table — the network and EKS resource kinds the engine
knows how to reconcile.
"""
from typing import List

from converge.models.schema import KindSchema

_ARN = "arn:aws:{service}:{region}:{account}:{path}"


def _arn(service: str, path: str, regional: bool = True) -> str:
    return _ARN.format(
        service=service,
        region="{region}" if regional else "",
        account="{account}",
        path=path,
    )


SCHEMAS: List[KindSchema] = [
    KindSchema(
        kind="aws_vpc",
        updatable=frozenset({"enable_dns_support", "enable_dns_hostnames"}),
        outputs=("id", "arn", "default_route_table_id", "main_route_table_id", "owner_id"),
        id_prefix="vpc",
        computed={
            "arn": _arn("ec2", "vpc/{id}"),
            "default_route_table_id": "rtb-{suffix}",
            "main_route_table_id": "rtb-{suffix}",
            "owner_id": "{account}",
        },
    ),
    KindSchema(
        kind="aws_subnet",
        updatable=frozenset({"map_public_ip_on_launch"}),
        references={"vpc_id": ("aws_vpc",)},
        outputs=("id", "arn", "availability_zone_id"),
        id_prefix="subnet",
        computed={"arn": _arn("ec2", "subnet/{id}")},
    ),
    KindSchema(
        kind="aws_internet_gateway",
        references={"vpc_id": ("aws_vpc",)},
        outputs=("id", "arn"),
        id_prefix="igw",
        computed={"arn": _arn("ec2", "internet-gateway/{id}")},
    ),
    KindSchema(
        kind="aws_eip",
        outputs=("id", "allocation_id", "public_ip"),
        id_prefix="eipalloc",
        computed={"allocation_id": "{id}", "public_ip": "203.0.113.{octet}"},
    ),
    KindSchema(
        kind="aws_nat_gateway",
        references={
            "subnet_id": ("aws_subnet",),
            "allocation_id": ("aws_eip",),
        },
        outputs=("id", "public_ip", "network_interface_id"),
        id_prefix="nat",
        computed={"network_interface_id": "eni-{suffix}"},
    ),
    KindSchema(
        kind="aws_route_table",
        updatable=frozenset({"route", "propagating_vgws"}),
        references={
            "vpc_id": ("aws_vpc",),
            "route.gateway_id": ("aws_internet_gateway",),
            "route.nat_gateway_id": ("aws_nat_gateway",),
        },
        outputs=("id", "arn"),
        id_prefix="rtb",
        computed={"arn": _arn("ec2", "route-table/{id}")},
    ),
    KindSchema(
        kind="aws_route",
        updatable=frozenset({"gateway_id", "nat_gateway_id"}),
        references={
            "route_table_id": ("aws_route_table",),
            "gateway_id": ("aws_internet_gateway",),
            "nat_gateway_id": ("aws_nat_gateway",),
        },
        id_prefix="r",
    ),
    KindSchema(
        kind="aws_route_table_association",
        updatable=frozenset({"route_table_id"}),
        references={
            "subnet_id": ("aws_subnet",),
            "route_table_id": ("aws_route_table",),
        },
        id_prefix="rtbassoc",
    ),
    KindSchema(
        kind="aws_security_group",
        updatable=frozenset({"ingress", "egress", "description"}),
        references={"vpc_id": ("aws_vpc",)},
        outputs=("id", "arn"),
        id_prefix="sg",
        computed={"arn": _arn("ec2", "security-group/{id}")},
    ),
    KindSchema(
        kind="aws_iam_role",
        updatable=frozenset({"assume_role_policy", "description", "max_session_duration"}),
        outputs=("id", "arn", "unique_id"),
        id_prefix="role",
        computed={
            "arn": _arn("iam", "role/{name}", regional=False),
            "unique_id": "AROA{SUFFIX}",
        },
    ),
    KindSchema(
        kind="aws_iam_role_policy_attachment",
        references={"role": ("aws_iam_role",)},
        id_prefix="attach",
    ),
    KindSchema(
        kind="aws_eks_cluster",
        updatable=frozenset({"version", "enabled_cluster_log_types"}),
        references={
            "role_arn": ("aws_iam_role",),
            "vpc_config.subnet_ids": ("aws_subnet",),
            "vpc_config.security_group_ids": ("aws_security_group",),
        },
        outputs=("id", "arn", "endpoint", "certificate_authority", "platform_version"),
        id_prefix="eks",
        computed={
            "arn": _arn("eks", "cluster/{name}"),
            "endpoint": "https://{SUFFIX}.gr7.{region}.eks.amazonaws.com",
            "platform_version": "eks.1",
        },
    ),
    KindSchema(
        kind="aws_eks_node_group",
        updatable=frozenset({"scaling_config", "labels", "version", "update_config"}),
        references={
            "cluster_name": ("aws_eks_cluster",),
            "node_role_arn": ("aws_iam_role",),
            "subnet_ids": ("aws_subnet",),
        },
        outputs=("id", "arn", "status"),
        id_prefix="ng",
        computed={
            "arn": _arn("eks", "nodegroup/{node_group_name}/{suffix}"),
            "status": "ACTIVE",
        },
    ),
]
