"""
Request bodies of the HTTP API.

Field names follow the camelCase contract dashboards already send
(nodeId, jobName, ...); snake_case names are accepted as well.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agg_common.models import RemoteTarget


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class NodeCreate(ApiModel):
    host: str
    port: int
    account: str
    password: str | None = None
    kind: str = "jenkins"
    name: str | None = None


class NodeUpdate(ApiModel):
    id: str
    host: str | None = None
    port: int | None = None
    account: str | None = None
    password: str | None = None
    kind: str | None = None
    name: str | None = None

    def patch(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "account": self.account,
            "credential": self.password,
            "kind": self.kind,
            "name": self.name,
        }


class NodeRef(ApiModel):
    node_id: str = Field(alias="nodeId")


class ViewCreate(ApiModel):
    name: str
    jobs: list[str] = Field(default_factory=list)
    description: str | None = None


class ViewUpdate(ApiModel):
    name: str | None = None
    add_jobs: list[str] = Field(default_factory=list, alias="addJobs")
    remove_jobs: list[str] = Field(default_factory=list, alias="removeJobs")
    description: str | None = None


class TargetFields(ApiModel):
    """
    Optional connection fields of control requests.

    They only matter for targets that are not registered; a registered node
    always uses its registry credentials.
    """

    node_id: str | None = Field(default=None, alias="nodeId")
    host: str | None = None
    port: int | None = None
    account: str | None = None
    password: str | None = None
    kind: str = "jenkins"

    def override(self) -> RemoteTarget | None:
        if not self.host or self.port is None or not self.account:
            return None
        return RemoteTarget(
            host=self.host,
            port=self.port,
            account=self.account,
            password=self.password,
            kind=self.kind,
        )


class JobControl(TargetFields):
    job_name: str = Field(alias="jobName")
    view_id: str | None = Field(default=None, alias="viewId")
    parameters: dict[str, Any] | None = None


class ConsoleRequest(TargetFields):
    job_name: str = Field(alias="jobName")
    view_id: str | None = Field(default=None, alias="viewId")
    view_name: str | None = Field(default=None, alias="viewName")
    build_id: int | None = Field(default=None, alias="buildId")
    offset: int = Field(default=0, ge=0)
