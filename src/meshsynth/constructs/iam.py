"""IAM roles and inline policies."""

from __future__ import annotations

from typing import Any

from meshsynth.core.construct import CfnResource, Construct, make_unique_id
from meshsynth.core.tokens import AWS_PARTITION, concat


def managed_policy_arn(name: str) -> Any:
    """ARN of an AWS managed policy, e.g. ``service-role/AmazonECSTaskExecutionRolePolicy``."""
    return concat("arn:", AWS_PARTITION, ":iam::aws:policy/", name)


def _one_or_many(values: list[Any]) -> Any:
    return values[0] if len(values) == 1 else list(values)


class Role(Construct):
    """
    A role assumed by an AWS service principal.

    Statements added with ``add_to_policy`` go into a single inline
    ``DefaultPolicy`` created on first use.
    """

    def __init__(self, scope: Construct, id: str, service: str) -> None:
        super().__init__(scope, id)
        self._managed: list[Any] = []
        self._managed_names: list[str] = []
        self._statements: list[dict[str, Any]] = []
        self.policy: CfnResource | None = None
        self.resource = CfnResource(
            self,
            "Resource",
            "AWS::IAM::Role",
            {
                "AssumeRolePolicyDocument": {
                    "Statement": [
                        {
                            "Action": "sts:AssumeRole",
                            "Effect": "Allow",
                            "Principal": {"Service": service},
                        }
                    ],
                    "Version": "2012-10-17",
                }
            },
        )

    @property
    def arn(self) -> Any:
        return self.resource.get_att("Arn")

    @property
    def managed_policies(self) -> list[str]:
        return list(self._managed_names)

    def add_managed_policy(self, name: str) -> None:
        if name in self._managed_names:
            return
        self._managed_names.append(name)
        self._managed.append(managed_policy_arn(name))
        self.resource.properties["ManagedPolicyArns"] = self._managed

    def add_to_policy(
        self,
        actions: list[str],
        resources: list[Any],
        effect: str = "Allow",
    ) -> None:
        statement = {
            "Action": _one_or_many(actions),
            "Effect": effect,
            "Resource": _one_or_many(resources),
        }
        if statement in self._statements:
            return
        self._statements.append(statement)
        if self.policy is None:
            scope = Construct(self, "DefaultPolicy")
            self.policy = CfnResource(
                scope,
                "Resource",
                "AWS::IAM::Policy",
                {
                    "PolicyDocument": {
                        "Statement": self._statements,
                        "Version": "2012-10-17",
                    },
                    "PolicyName": make_unique_id(scope.path.split("/")),
                    "Roles": [self.resource.ref],
                },
            )


class InstanceProfile(Construct):
    def __init__(self, scope: Construct, id: str, role: Role) -> None:
        super().__init__(scope, id)
        self.resource = CfnResource(
            self,
            "Resource",
            "AWS::IAM::InstanceProfile",
            {"Roles": [role.resource.ref]},
        )
