"""Tekton pipeline and trigger resources for the cicd environment.

The cicd environment runs two flows, both started from a GitHub pull request
webhook received by the event listener:

  - A dry-run of the GitOps repository, applying every kustomization with
    `kubectl apply --dry-run` to catch errors before the change is merged.
  - A CI build of an application service repository, pushing the image to
    the image repository chosen at bootstrap.

Only the dry-run trigger validates the webhook signature, with the GitOps
webhook secret. The application CI trigger is shared by every service
repository and only filters on the event type and repository name, so it
accepts unsigned pull request payloads sent to the event listener route. The
per-service `github-webhook-secret-<service>` secrets are sealed for the
service webhooks but no trigger refers to them yet.
"""

from dataclasses import dataclass, field
import logging
from typing import Any, ClassVar

from mashumaro import field_options

from .resources import (
    SECRET_KIND,
    SERVICE_ACCOUNT_KIND,
    Document,
    NamedResource,
    NamespacedName,
    ObjectMeta,
    Resource,
)

__all__ = [
    "Task",
    "Pipeline",
    "TriggerBinding",
    "TriggerTemplate",
    "EventListener",
]

_LOGGER = logging.getLogger(__name__)

TEKTON_API_VERSION = "tekton.dev/v1beta1"
TRIGGERS_API_VERSION = "triggers.tekton.dev/v1alpha1"

TASK_KIND = "Task"
CLUSTER_TASK_KIND = "ClusterTask"
PIPELINE_KIND = "Pipeline"
PIPELINE_RUN_KIND = "PipelineRun"
TRIGGER_BINDING_KIND = "TriggerBinding"
TRIGGER_TEMPLATE_KIND = "TriggerTemplate"

KUBECTL_IMAGE = "quay.io/kmcdermo/k8s-kubectl:latest"
YQ_IMAGE = "mikefarah/yq:3"
SOURCE_WORKSPACE = "source"

# Parameters extracted from a GitHub pull_request event
PR_BINDING_PARAMS = {
    "gitref": "$(body.pull_request.head.ref)",
    "gitsha": "$(body.pull_request.head.sha)",
    "gitrepositoryurl": "$(body.repository.clone_url)",
    "fullname": "$(body.repository.full_name)",
}

PR_FILTER = "(body.action == 'opened' || body.action == 'synchronize')"


@dataclass
class Param(Document):
    """A name and value passed to a task, pipeline or template."""

    name: str
    value: str


@dataclass
class ParamSpec(Document):
    """Declaration of a parameter."""

    name: str
    type: str = "string"
    description: str | None = None
    default: str | None = None


@dataclass
class WorkspaceDeclaration(Document):
    """Declaration of a workspace used by a task or pipeline."""

    name: str
    description: str | None = None


@dataclass
class WorkspaceBinding(Document):
    """Binding of a pipeline workspace to a task workspace."""

    name: str
    workspace: str


@dataclass
class Step(Document):
    """A container run as part of a task."""

    name: str
    image: str
    script: str
    working_dir: str | None = field(
        default=None, metadata=field_options(alias="workingDir")
    )


@dataclass
class TaskSpec(Document):
    """Spec of a Task."""

    params: list[ParamSpec] | None = None
    workspaces: list[WorkspaceDeclaration] | None = None
    steps: list[Step] = field(default_factory=list)


@dataclass
class Task(Resource):
    """A Tekton Task."""

    kind: ClassVar[str] = TASK_KIND
    api_version: ClassVar[str] = TEKTON_API_VERSION

    spec: TaskSpec


@dataclass
class TaskRef(Document):
    """Reference to a Task or ClusterTask."""

    name: str
    kind: str = TASK_KIND


@dataclass
class PipelineTask(Document):
    """A task invocation within a pipeline."""

    name: str
    task_ref: TaskRef = field(metadata=field_options(alias="taskRef"))
    params: list[Param] | None = None
    workspaces: list[WorkspaceBinding] | None = None
    run_after: list[str] | None = field(
        default=None, metadata=field_options(alias="runAfter")
    )


@dataclass
class PipelineSpec(Document):
    """Spec of a Pipeline."""

    params: list[ParamSpec] | None = None
    workspaces: list[WorkspaceDeclaration] | None = None
    tasks: list[PipelineTask] = field(default_factory=list)


@dataclass
class Pipeline(Resource):
    """A Tekton Pipeline."""

    kind: ClassVar[str] = PIPELINE_KIND
    api_version: ClassVar[str] = TEKTON_API_VERSION

    spec: PipelineSpec

    def references(self) -> list[NamedResource]:
        # Cluster tasks are installed with Tekton itself
        return [
            NamedResource(TASK_KIND, self.metadata.namespace, task.task_ref.name)
            for task in self.spec.tasks
            if task.task_ref.kind == TASK_KIND
        ]


@dataclass
class TriggerBindingSpec(Document):
    """Spec of a TriggerBinding."""

    params: list[Param] = field(default_factory=list)


@dataclass
class TriggerBinding(Resource):
    """Extracts parameters from an incoming webhook event."""

    kind: ClassVar[str] = TRIGGER_BINDING_KIND
    api_version: ClassVar[str] = TRIGGERS_API_VERSION

    spec: TriggerBindingSpec


@dataclass
class TriggerTemplateSpec(Document):
    """Spec of a TriggerTemplate."""

    params: list[ParamSpec] = field(default_factory=list)
    resourcetemplates: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class TriggerTemplate(Resource):
    """Creates a PipelineRun from the bound event parameters."""

    kind: ClassVar[str] = TRIGGER_TEMPLATE_KIND
    api_version: ClassVar[str] = TRIGGERS_API_VERSION

    spec: TriggerTemplateSpec

    def references(self) -> list[NamedResource]:
        refs = []
        namespace = self.metadata.namespace
        for template in self.spec.resourcetemplates:
            if template.get("kind") != PIPELINE_RUN_KIND:
                continue
            spec = template.get("spec", {})
            if pipeline_ref := spec.get("pipelineRef"):
                refs.append(
                    NamedResource(PIPELINE_KIND, namespace, pipeline_ref["name"])
                )
            if sa_name := spec.get("serviceAccountName"):
                refs.append(NamedResource(SERVICE_ACCOUNT_KIND, namespace, sa_name))
        return refs


@dataclass
class TriggerRef(Document):
    """Reference to a TriggerBinding or TriggerTemplate."""

    ref: str


@dataclass
class EventListenerTrigger(Document):
    """Connects filtered webhook events to a binding and template."""

    name: str
    bindings: list[TriggerRef]
    template: TriggerRef
    interceptors: list[dict[str, Any]] | None = None


@dataclass
class EventListenerSpec(Document):
    """Spec of an EventListener."""

    service_account_name: str = field(
        metadata=field_options(alias="serviceAccountName")
    )
    triggers: list[EventListenerTrigger] = field(default_factory=list)


@dataclass
class EventListener(Resource):
    """Receives webhook events and dispatches them to triggers."""

    kind: ClassVar[str] = "EventListener"
    api_version: ClassVar[str] = TRIGGERS_API_VERSION

    spec: EventListenerSpec

    @property
    def service_name(self) -> str:
        """Name of the Service created by Tekton for the listener."""
        return f"el-{self.metadata.name}"

    def references(self) -> list[NamedResource]:
        namespace = self.metadata.namespace
        refs = [
            NamedResource(
                SERVICE_ACCOUNT_KIND, namespace, self.spec.service_account_name
            )
        ]
        for trigger in self.spec.triggers:
            refs.extend(
                NamedResource(TRIGGER_BINDING_KIND, namespace, binding.ref)
                for binding in trigger.bindings
            )
            refs.append(
                NamedResource(TRIGGER_TEMPLATE_KIND, namespace, trigger.template.ref)
            )
            for interceptor in trigger.interceptors or []:
                if secret_ref := interceptor.get("github", {}).get("secretRef"):
                    refs.append(
                        NamedResource(SECRET_KIND, namespace, secret_ref["secretName"])
                    )
        return refs


def _source_workspace() -> list[WorkspaceDeclaration]:
    return [WorkspaceDeclaration(name=SOURCE_WORKSPACE)]


def _clone_task(params: dict[str, str]) -> PipelineTask:
    return PipelineTask(
        name="clone-source",
        task_ref=TaskRef(name="git-clone", kind=CLUSTER_TASK_KIND),
        params=[
            Param(name="url", value=params["REPO"]),
            Param(name="revision", value=params["COMMIT_SHA"]),
        ],
        workspaces=[WorkspaceBinding(name="output", workspace=SOURCE_WORKSPACE)],
    )


def create_deploy_from_source_task(name: NamespacedName) -> Task:
    """Create the Task applying every kustomization of a checked out repo."""
    return Task(
        metadata=ObjectMeta.from_name(name),
        spec=TaskSpec(
            params=[
                ParamSpec(
                    name="PATHTODEPLOY",
                    description="Path to the manifests to apply",
                    default="environments",
                ),
                ParamSpec(
                    name="DRYRUN",
                    description="Value of the kubectl --dry-run flag",
                    default="none",
                ),
            ],
            workspaces=_source_workspace(),
            steps=[
                Step(
                    name="run-kubectl",
                    image=KUBECTL_IMAGE,
                    working_dir=f"$(workspaces.{SOURCE_WORKSPACE}.path)",
                    script=(
                        "find $(params.PATHTODEPLOY) -name kustomization.yaml "
                        "-execdir kubectl apply --dry-run=$(params.DRYRUN) -k . \\;"
                    ),
                )
            ],
        ),
    )


def create_deploy_using_kubectl_task(name: NamespacedName) -> Task:
    """Create the Task updating a deployment image and applying it."""
    return Task(
        metadata=ObjectMeta.from_name(name),
        spec=TaskSpec(
            params=[
                ParamSpec(
                    name="PATHTODEPLOY",
                    description="Path to the manifests to apply",
                    default="deploy",
                ),
                ParamSpec(
                    name="YAMLPATHTOIMAGE",
                    description="The path to the image to replace in the yaml manifest",
                ),
                ParamSpec(name="IMAGE", description="The image to deploy"),
                ParamSpec(name="NAMESPACE", description="Namespace to deploy to"),
                ParamSpec(
                    name="DRYRUN",
                    description="Value of the kubectl --dry-run flag",
                    default="none",
                ),
            ],
            workspaces=_source_workspace(),
            steps=[
                Step(
                    name="replace-image",
                    image=YQ_IMAGE,
                    working_dir=f"$(workspaces.{SOURCE_WORKSPACE}.path)",
                    script=(
                        "yq w -i $(params.PATHTODEPLOY)/100-deployment.yaml "
                        "$(params.YAMLPATHTOIMAGE) $(params.IMAGE)"
                    ),
                ),
                Step(
                    name="run-kubectl",
                    image=KUBECTL_IMAGE,
                    working_dir=f"$(workspaces.{SOURCE_WORKSPACE}.path)",
                    script=(
                        "kubectl apply --dry-run=$(params.DRYRUN) "
                        "-n $(params.NAMESPACE) -k $(params.PATHTODEPLOY)"
                    ),
                ),
            ],
        ),
    )


def create_ci_dryrun_pipeline(name: NamespacedName, task_name: str) -> Pipeline:
    """Create the Pipeline that dry-runs a pull request of the GitOps repo."""
    params = {"REPO": "$(params.REPO)", "COMMIT_SHA": "$(params.COMMIT_SHA)"}
    return Pipeline(
        metadata=ObjectMeta.from_name(name),
        spec=PipelineSpec(
            params=[ParamSpec(name="REPO"), ParamSpec(name="COMMIT_SHA")],
            workspaces=_source_workspace(),
            tasks=[
                _clone_task(params),
                PipelineTask(
                    name="apply-source",
                    task_ref=TaskRef(name=task_name),
                    params=[Param(name="DRYRUN", value="server")],
                    workspaces=[
                        WorkspaceBinding(
                            name=SOURCE_WORKSPACE, workspace=SOURCE_WORKSPACE
                        )
                    ],
                    run_after=["clone-source"],
                ),
            ],
        ),
    )


def create_app_ci_pipeline(name: NamespacedName) -> Pipeline:
    """Create the Pipeline that builds and pushes an application image."""
    params = {"REPO": "$(params.REPO)", "COMMIT_SHA": "$(params.COMMIT_SHA)"}
    return Pipeline(
        metadata=ObjectMeta.from_name(name),
        spec=PipelineSpec(
            params=[
                ParamSpec(name="REPO"),
                ParamSpec(name="COMMIT_SHA"),
                ParamSpec(name="IMAGE"),
                ParamSpec(name="TLSVERIFY", default="true"),
            ],
            workspaces=_source_workspace(),
            tasks=[
                _clone_task(params),
                PipelineTask(
                    name="build-image",
                    task_ref=TaskRef(name="buildah", kind=CLUSTER_TASK_KIND),
                    params=[
                        Param(name="IMAGE", value="$(params.IMAGE)"),
                        Param(name="TLSVERIFY", value="$(params.TLSVERIFY)"),
                    ],
                    workspaces=[
                        WorkspaceBinding(
                            name=SOURCE_WORKSPACE, workspace=SOURCE_WORKSPACE
                        )
                    ],
                    run_after=["clone-source"],
                ),
            ],
        ),
    )


def create_pr_binding(name: NamespacedName) -> TriggerBinding:
    """Create the TriggerBinding for GitHub pull request events."""
    return TriggerBinding(
        metadata=ObjectMeta.from_name(name),
        spec=TriggerBindingSpec(
            params=[
                Param(name=key, value=value) for key, value in PR_BINDING_PARAMS.items()
            ]
        ),
    )


def _pipeline_run(
    pipeline_name: str, sa_name: str, params: dict[str, str]
) -> dict[str, Any]:
    return {
        "apiVersion": TEKTON_API_VERSION,
        "kind": PIPELINE_RUN_KIND,
        "metadata": {"generateName": f"{pipeline_name}-run-"},
        "spec": {
            "serviceAccountName": sa_name,
            "pipelineRef": {"name": pipeline_name},
            "params": [{"name": key, "value": value} for key, value in params.items()],
            "workspaces": [
                {
                    "name": SOURCE_WORKSPACE,
                    "volumeClaimTemplate": {
                        "spec": {
                            "accessModes": ["ReadWriteOnce"],
                            "resources": {"requests": {"storage": "1Gi"}},
                        }
                    },
                }
            ],
        },
    }


def _pr_template_params() -> list[ParamSpec]:
    return [ParamSpec(name=key) for key in PR_BINDING_PARAMS]


def create_ci_dryrun_template(
    name: NamespacedName, sa_name: str, pipeline_name: str
) -> TriggerTemplate:
    """Create the TriggerTemplate running the GitOps dry-run pipeline."""
    return TriggerTemplate(
        metadata=ObjectMeta.from_name(name),
        spec=TriggerTemplateSpec(
            params=_pr_template_params(),
            resourcetemplates=[
                _pipeline_run(
                    pipeline_name,
                    sa_name,
                    {
                        "REPO": "$(tt.params.gitrepositoryurl)",
                        "COMMIT_SHA": "$(tt.params.gitsha)",
                    },
                )
            ],
        ),
    )


def create_app_ci_template(
    name: NamespacedName,
    sa_name: str,
    pipeline_name: str,
    image_repo: str,
    tls_verify: bool,
) -> TriggerTemplate:
    """Create the TriggerTemplate building an application image.

    Images are tagged with the pull request branch and commit.
    """
    return TriggerTemplate(
        metadata=ObjectMeta.from_name(name),
        spec=TriggerTemplateSpec(
            params=_pr_template_params(),
            resourcetemplates=[
                _pipeline_run(
                    pipeline_name,
                    sa_name,
                    {
                        "REPO": "$(tt.params.gitrepositoryurl)",
                        "COMMIT_SHA": "$(tt.params.gitsha)",
                        "IMAGE": (
                            f"{image_repo}:$(tt.params.gitref)-$(tt.params.gitsha)"
                        ),
                        "TLSVERIFY": str(tls_verify).lower(),
                    },
                )
            ],
        ),
    )


def _cel_filter(expression: str) -> dict[str, Any]:
    return {"cel": {"filter": expression}}


def create_event_listener(
    name: NamespacedName,
    sa_name: str,
    gitops_repo: str,
    *,
    webhook_secret_name: str,
    webhook_secret_key: str,
    pr_binding: str,
    dryrun_template: str,
    app_ci_template: str,
) -> EventListener:
    """Create the EventListener receiving pull request events.

    Pull requests against the GitOps repository (`<org>/<repo>`) run the
    dry-run pipeline, pull requests against any other repository run the
    application CI pipeline. The application CI trigger does not check the
    webhook signature.
    """
    return EventListener(
        metadata=ObjectMeta.from_name(name),
        spec=EventListenerSpec(
            service_account_name=sa_name,
            triggers=[
                EventListenerTrigger(
                    name="ci-dryrun-from-pr",
                    interceptors=[
                        {
                            "github": {
                                "secretRef": {
                                    "secretName": webhook_secret_name,
                                    "secretKey": webhook_secret_key,
                                },
                                "eventTypes": ["pull_request"],
                            }
                        },
                        _cel_filter(
                            f"{PR_FILTER} && body.repository.full_name "
                            f"== '{gitops_repo}'"
                        ),
                    ],
                    bindings=[TriggerRef(ref=pr_binding)],
                    template=TriggerRef(ref=dryrun_template),
                ),
                EventListenerTrigger(
                    name="app-ci-build-from-pr",
                    interceptors=[
                        _cel_filter(
                            "header.match('X-GitHub-Event', 'pull_request') && "
                            f"{PR_FILTER} && body.repository.full_name "
                            f"!= '{gitops_repo}'"
                        ),
                    ],
                    bindings=[TriggerRef(ref=pr_binding)],
                    template=TriggerRef(ref=app_ci_template),
                ),
            ],
        ),
    )
