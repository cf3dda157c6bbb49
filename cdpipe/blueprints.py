"""Canonical pipeline layouts.

``standard_pipeline`` builds the four-stage layout every cdpipe service
starts from:

    Source -> Build -> Self_Mutation -> Deploy

The Deploy stage deploys the data stack, then the API stack (capturing its
URL), then runs an integration test against that URL.  Stack deploys are
numbered 1, 3, ...: a stack deploy spans two run orders, preparing its
change set at N and executing it at N + 1.  A DeployStack action does both
steps itself, so the unused orders collapse into dense tiers.
"""

from __future__ import annotations

import json

from cdpipe.config import settings
from cdpipe.models.actions import ActionDefinition, ActionKind, OutputBinding
from cdpipe.models.pipeline import (
    PipelineDefinition,
    SourceIdentity,
    StageDefinition,
    TriggerMode,
    TriggerPolicy,
)

SOURCE_OUTPUT = "SourceOutput"
BUILD_OUTPUT = "CdkBuildOutput"
API_OUTPUTS = "ApiGwStackOutputs"
URL_OUTPUT = "Url"


def standard_pipeline(
    name: str = "MeerkatsPipeline",
    *,
    owner: str = "NetaNir",
    repo: str = "meerkats",
    branch: str = "main",
    data_stack: str = "DDBStack",
    api_stack: str = "APIGWStack",
    poll_interval_seconds: float | None = None,
    supersede_in_flight: bool = False,
    integration_commands: list[str] | None = None,
) -> PipelineDefinition:
    """Return the standard Source/Build/Self_Mutation/Deploy pipeline.

    ``poll_interval_seconds`` defaults to the value in
    ``cdpipe.config.settings``.
    """
    trigger = TriggerPolicy(
        mode=TriggerMode.POLL,
        poll_interval_seconds=poll_interval_seconds or settings.poll_interval_seconds,
        source=SourceIdentity(owner=owner, repo=repo, branch=branch),
        supersede_in_flight=supersede_in_flight,
    )

    source = StageDefinition(
        name="Source",
        actions=[
            ActionDefinition(
                name="Source_GitHub",
                kind=ActionKind.SOURCE,
                output=SOURCE_OUTPUT,
            )
        ],
    )

    build = StageDefinition(
        name="Build",
        actions=[
            ActionDefinition(
                name="Build_CodeBuild",
                kind=ActionKind.BUILD,
                inputs=[SOURCE_OUTPUT],
                output=BUILD_OUTPUT,
                install_commands=["npm install"],
                commands=["npm run cdk synth"],
                expected_files=[
                    "pipeline.json",
                    f"{data_stack}.template.json",
                    f"{api_stack}.template.json",
                ],
            )
        ],
    )

    self_mutation = StageDefinition(
        name="Self_Mutation",
        actions=[
            ActionDefinition(
                name="Self_Mutate",
                kind=ActionKind.SELF_MUTATE,
                inputs=[BUILD_OUTPUT],
            )
        ],
    )

    deploy = StageDefinition(
        name="Deploy",
        actions=[
            ActionDefinition(
                name="Deploy_DynamoDB_Stack",
                kind=ActionKind.DEPLOY_STACK,
                run_order=1,
                inputs=[BUILD_OUTPUT],
                stack=data_stack,
            ),
            ActionDefinition(
                name="Deploy_API_GW_Stack",
                kind=ActionKind.DEPLOY_STACK,
                run_order=3,
                inputs=[BUILD_OUTPUT],
                stack=api_stack,
                output=API_OUTPUTS,
                output_file_name="outputs.json",
                output_keys=[URL_OUTPUT],
            ),
            ActionDefinition(
                name="Integ_Test",
                kind=ActionKind.RUN_COMMAND,
                run_order=5,
                inputs=[API_OUTPUTS],
                output_bindings=[
                    OutputBinding(variable="API_GW_URL", artifact=API_OUTPUTS, key=URL_OUTPUT)
                ],
                commands=integration_commands or ["set -e", "curl $API_GW_URL"],
            ),
        ],
    )

    return PipelineDefinition(
        name=name,
        stages=[source, build, self_mutation, deploy],
        trigger=trigger,
        restart_execution_on_update=True,
    )


def sample_source_files(
    definition: PipelineDefinition,
    *,
    api_url: str = "https://meerkats.execute-api.local/prod/",
) -> dict[str, bytes]:
    """Source tree of a service using *definition*, as its synth output.

    Holds ``pipeline.json`` plus one JSON template per deployed stack; a
    stack whose deploy captures outputs exposes ``Url`` as *api_url*.
    """
    files: dict[str, bytes] = {"pipeline.json": definition.to_json().encode("utf-8")}
    for stage in definition.stages:
        for action in stage.actions:
            if action.kind != ActionKind.DEPLOY_STACK:
                continue
            template: dict = {"Resources": {f"{action.stack}Resource": {"Type": "Custom"}}}
            if action.output:
                template["Outputs"] = {key: api_url for key in action.output_keys or [URL_OUTPUT]}
            files[action.stack_template_file] = json.dumps(
                template, indent=2, sort_keys=True
            ).encode("utf-8")
    return files
