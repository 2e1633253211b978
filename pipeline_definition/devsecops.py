"""
Builder for the nine-stage shift-left DevSecOps pipeline.

The stages run strictly in order: lint, static analysis, secret detection,
image build, filesystem scan, image scan, registry push, staging deploy and a
manually gated production deploy. Every stage is an invocation of an external
vendor tool; the builder only decides images, flags and ordering.
"""

from dataclasses import dataclass

from pipeline_common.models import PipeCall, Pipeline, PipelineDefinition, StepDefinition

# Variables the stages consume, with the purpose shown in generated docs
REQUIRED_VARIABLES: dict[str, str] = {
    "SONAR_TOKEN": "SonarQube authentication token (secured)",
    "SONAR_HOST_URL": "Base URL of the SonarQube server",
    "IMAGE_NAME": "Local name of the application image",
    "AWS_DEFAULT_REGION": "AWS region of the ECR registry and ECS cluster",
    "AWS_ACCOUNT_ID": "AWS account that owns the ECR registry",
    "ECR_REPO_URI": "Full URI of the ECR repository the image is pushed to",
    "AWS_ACCESS_KEY_ID": "AWS access key used by the AWS CLI and deploy pipe (secured)",
    "AWS_SECRET_ACCESS_KEY": "AWS secret key used by the AWS CLI and deploy pipe (secured)",
    "ECS_CLUSTER_NAME": "ECS cluster to deploy to (deployment variable)",
    "ECS_SERVICE_NAME": "ECS service to update (deployment variable)",
}

SECURED_VARIABLES = frozenset({"SONAR_TOKEN", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY"})

# Stage names in pipeline order
STAGE_NAMES = (
    "Lint",
    "Static Analysis (SonarQube)",
    "Secret Detection (Gitleaks)",
    "Build Docker Image",
    "Filesystem Vulnerability Scan (Trivy)",
    "Image Vulnerability Scan (Trivy)",
    "Push Image to ECR",
    "Deploy to Staging",
    "Deploy to Production",
)

# Stages that run on every branch before code reaches the production branch
SHIFT_LEFT_STAGE_COUNT = 3

IMAGE_ARCHIVE = "image.tar"
GITLEAKS_REPORT = "gitleaks-report.json"


@dataclass
class DevSecOpsSettings:
    """Tunable parts of the generated pipeline."""

    node_image: str = "node:20"
    sonar_image: str = "sonarsource/sonar-scanner-cli:5"
    gitleaks_image: str = "zricethezav/gitleaks:v8.18.4"
    trivy_image: str = "aquasec/trivy:0.50.1"
    aws_cli_image: str = "amazon/aws-cli:2.15.30"
    ecs_deploy_pipe: str = "atlassian/aws-ecs-deploy:1.12.1"
    trivy_severity: str = "CRITICAL,HIGH"
    gitleaks_redact: int = 100
    task_definition: str = "task-definition.json"
    blocking_scans: bool = False  # When False, scan findings never fail the run
    production_branch: str = "main"
    lint_command: str = "npx eslint ."

    def scan_suffix(self) -> str:
        return "" if self.blocking_scans else " || true"


def _deploy_step(settings: DevSecOpsSettings, name: str, environment: str) -> StepDefinition:
    return StepDefinition(
        name=name,
        deployment=environment,
        trigger="manual" if environment == "production" else "automatic",
        script=[
            PipeCall(
                pipe=settings.ecs_deploy_pipe,
                variables={
                    "AWS_ACCESS_KEY_ID": "$AWS_ACCESS_KEY_ID",
                    "AWS_SECRET_ACCESS_KEY": "$AWS_SECRET_ACCESS_KEY",
                    "AWS_DEFAULT_REGION": "$AWS_DEFAULT_REGION",
                    "CLUSTER_NAME": "$ECS_CLUSTER_NAME",
                    "SERVICE_NAME": "$ECS_SERVICE_NAME",
                    "TASK_DEFINITION": settings.task_definition,
                },
            )
        ],
    )


def build_stages(settings: DevSecOpsSettings | None = None) -> list[StepDefinition]:
    """
    Build the nine stage definitions in execution order.

    Args:
        settings: Images and flags to use (defaults when omitted)

    Returns:
        List of nine StepDefinition objects
    """
    settings = settings or DevSecOpsSettings()
    suffix = settings.scan_suffix()
    image_tag = "$IMAGE_NAME:$BITBUCKET_COMMIT"
    registry = "$AWS_ACCOUNT_ID.dkr.ecr.$AWS_DEFAULT_REGION.amazonaws.com"

    return [
        StepDefinition(
            name=STAGE_NAMES[0],
            image=settings.node_image,
            caches=["node"],
            script=["npm ci", settings.lint_command],
        ),
        StepDefinition(
            name=STAGE_NAMES[1],
            image=settings.sonar_image,
            caches=["sonar"],
            script=[
                "sonar-scanner"
                " -Dsonar.projectKey=$BITBUCKET_REPO_SLUG"
                " -Dsonar.sources=."
                " -Dsonar.host.url=$SONAR_HOST_URL"
                " -Dsonar.token=$SONAR_TOKEN"
            ],
        ),
        StepDefinition(
            name=STAGE_NAMES[2],
            image=settings.gitleaks_image,
            script=[
                "gitleaks detect --source . --verbose"
                f" --redact={settings.gitleaks_redact}"
                f" --report-path {GITLEAKS_REPORT}{suffix}"
            ],
            artifacts=[GITLEAKS_REPORT],
        ),
        StepDefinition(
            name=STAGE_NAMES[3],
            services=["docker"],
            caches=["docker"],
            script=[
                f"docker build -t {image_tag} .",
                f"docker save {image_tag} -o {IMAGE_ARCHIVE}",
            ],
            artifacts=[IMAGE_ARCHIVE],
        ),
        StepDefinition(
            name=STAGE_NAMES[4],
            image=settings.trivy_image,
            script=[
                f"trivy fs --severity {settings.trivy_severity}"
                f" --exit-code 1 --no-progress .{suffix}"
            ],
        ),
        StepDefinition(
            name=STAGE_NAMES[5],
            image=settings.trivy_image,
            script=[
                f"trivy image --input {IMAGE_ARCHIVE}"
                f" --severity {settings.trivy_severity}"
                f" --exit-code 1 --no-progress{suffix}"
            ],
        ),
        StepDefinition(
            name=STAGE_NAMES[6],
            image=settings.aws_cli_image,
            services=["docker"],
            script=[
                f"docker load -i {IMAGE_ARCHIVE}",
                "aws ecr get-login-password --region $AWS_DEFAULT_REGION"
                f" | docker login --username AWS --password-stdin {registry}",
                f"docker tag {image_tag} $ECR_REPO_URI:$BITBUCKET_COMMIT",
                "docker push $ECR_REPO_URI:$BITBUCKET_COMMIT",
            ],
        ),
        _deploy_step(settings, STAGE_NAMES[7], "staging"),
        _deploy_step(settings, STAGE_NAMES[8], "production"),
    ]


def build_devsecops_pipeline(settings: DevSecOpsSettings | None = None) -> PipelineDefinition:
    """
    Build the complete pipeline definition.

    The production branch runs all nine stages. Every other branch runs the
    shift-left checks (lint, static analysis, secret detection) only.
    """
    settings = settings or DevSecOpsSettings()
    stages = build_stages(settings)

    return PipelineDefinition(
        image=settings.node_image,
        caches={"sonar": "~/.sonar/cache"},
        services={"docker": {"memory": 2048}},
        pipelines={
            "default": Pipeline(name="default", steps=stages[:SHIFT_LEFT_STAGE_COUNT]),
            f"branches/{settings.production_branch}": Pipeline(
                name=f"branches/{settings.production_branch}", steps=stages
            ),
        },
    )
