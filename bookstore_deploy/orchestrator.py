"""
Main orchestrator for the build, infra and deploy stages.
"""

import logging
import shutil
from pathlib import Path
from typing import Dict, Mapping, Optional

from .artifact_publisher import Ec2ArtifactPublisher
from .aws_session import AwsContext
from .config import CONFIG, DEFAULT_STACK_TAGS, HANDOFF_KEYS
from .config_store import ConfigStore
from .data_models import DeploymentTarget, DeployResult, RolloutResult, RolloutState
from .error_handling import ConfigError, DeploymentException, TemplateError
from .image_builder import ContainerImagePublisher
from .logging_utils import log_success
from .remote_executor import RemoteExecutor
from .role_assumer import RoleAssumer
from .stack_deployer import StackDeployer, build_parameter_overrides
from .template_manager import CloudFormationTemplateManager

logger = logging.getLogger(__name__)


class DeploymentOrchestrator:
    """Runs the pipeline stages for one deployment target."""

    def __init__(self,
                 target: DeploymentTarget,
                 app_name: Optional[str] = None,
                 region: Optional[str] = None,
                 profile: Optional[str] = None,
                 config_directory: Optional[str] = None,
                 skip_role_assumption: bool = False,
                 aws_context: Optional[AwsContext] = None):
        """Initialize the orchestrator.

        Args:
            target: EC2 or ECS.
            app_name: Application name used for stack, role and artifact names.
            region: AWS region for operations.
            profile: AWS profile for authentication.
            config_directory: Directory holding the hand-off files.
            skip_role_assumption: Use the caller's credentials directly.
            aws_context: Pre-built AWS context, mainly for tests.
        """
        self.target = target
        self.app_name = app_name or CONFIG['app_name']
        self.profile = profile or CONFIG.get('aws_profile')
        self.aws_context = aws_context or AwsContext(region=region, profile=self.profile)
        self.region = self.aws_context.region
        self.skip_role_assumption = skip_role_assumption

        self.config_store = ConfigStore(config_directory)
        self.template_manager = CloudFormationTemplateManager()

        self.role_assumed = False
        self.state: Optional[RolloutState] = None
        self.last_result: Optional[RolloutResult] = None

    def stack_name(self, purpose: str) -> str:
        return f"{self.app_name}-{self.target.value.lower()}-{purpose}"

    @property
    def stack_tags(self) -> Dict[str, str]:
        tags = dict(DEFAULT_STACK_TAGS)
        tags['Application'] = self.app_name
        tags['DeploymentType'] = self.target.value
        return tags

    def stack_deployer(self) -> StackDeployer:
        # Once the role is assumed the CLI must use the exported keys, not the profile
        profile = None if self.role_assumed else self.profile
        return StackDeployer(self.aws_context.client('cloudformation'), self.region, profile=profile)

    def assume_role(self) -> None:
        if self.skip_role_assumption:
            logger.info("Skipping deployment role assumption")
            return
        if self.role_assumed:
            return
        RoleAssumer(self.aws_context, app_name=self.app_name).assume()
        self.role_assumed = True

    def load_handoff(self) -> Dict[str, str]:
        """Load infrastructure.config and build.config; build values win on conflicts."""
        infrastructure = self.config_store.load(self.config_store.infrastructure_path)
        build = self.config_store.load(self.config_store.build_path)
        return self.config_store.merge(infrastructure, build)

    def working_service_template(self) -> str:
        """Copy the bundled ECS service template into the config directory.

        Environment variables are injected into the copy so the packaged
        template never changes between runs.
        """
        source = Path(CONFIG['ecs_service_template'])
        destination = self.config_store.config_directory / source.name
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, destination)
        except OSError as e:
            raise TemplateError(f"Could not prepare service template {destination}: {e}",
                                template_path=str(destination))
        logger.debug(f"Using working copy {destination} of {source}")
        return str(destination)

    def _enter(self, state: RolloutState) -> None:
        self.state = state
        logger.info(f"[{self.target.value}] {state.value}")

    def _require(self, value: Optional[str], description: str, hint: str) -> str:
        if not value:
            raise ConfigError(f"Missing {description}", hints=[hint])
        return value

    def run_build(self,
                  publish_dir: Optional[str] = None,
                  artifact_bucket: Optional[str] = None,
                  docker_context: Optional[str] = None,
                  dockerfile: Optional[str] = None,
                  image_tag: Optional[str] = None) -> Dict[str, str]:
        """Produce the application artifact and record it in build.config.

        Returns:
            The values written to build.config.
        """
        logger.info(f"=== Build stage ({self.target.value}) ===")
        self.assume_role()

        previous = self.config_store.load(self.config_store.build_path)
        values = {HANDOFF_KEYS['region']: self.region}

        if self.target == DeploymentTarget.EC2:
            publish_dir = self._require(publish_dir, "publish directory", "Pass --publish-dir")
            bucket = self._require(
                ConfigStore.resolve(artifact_bucket, previous, HANDOFF_KEYS['artifact_bucket'],
                                    CONFIG['artifact_bucket']),
                "artifact bucket",
                "Pass --artifact-bucket or set ARTIFACT_BUCKET"
            )
            publisher = Ec2ArtifactPublisher(self.aws_context.client('s3'), app_name=self.app_name)
            archive = publisher.package(
                publish_dir,
                service_unit=publisher.build_service_unit(environment_file=publisher.environment_file)
            )
            values[HANDOFF_KEYS['artifact_uri']] = publisher.upload(str(archive), bucket)
            values[HANDOFF_KEYS['artifact_bucket']] = bucket
        else:
            docker_context = self._require(docker_context, "docker build context", "Pass --docker-context")
            publisher = ContainerImagePublisher(
                self.aws_context.client('ecr'), app_name=self.app_name, tags=self.stack_tags
            )
            values[HANDOFF_KEYS['image_uri']] = publisher.publish(
                docker_context, tag=image_tag, dockerfile=dockerfile
            )

        merged = self.config_store.merge(previous, values)
        self.config_store.save(self.config_store.build_path, merged)
        log_success(logger, "Build stage complete")
        return merged

    def infrastructure_parameters(self,
                                  vpc_id: Optional[str] = None,
                                  subnet_ids: Optional[str] = None,
                                  instance_type: Optional[str] = None,
                                  key_name: Optional[str] = None,
                                  cluster_name: Optional[str] = None) -> Dict[str, Optional[str]]:
        parameters = {
            'AppName': self.app_name,
            'VpcId': vpc_id,
        }
        if self.target == DeploymentTarget.EC2:
            parameters['SubnetId'] = subnet_ids.split(',')[0].strip() if subnet_ids else None
            parameters['InstanceType'] = instance_type or CONFIG['instance_type']
            parameters['KeyName'] = key_name
        else:
            parameters['SubnetIds'] = subnet_ids
            parameters['ClusterName'] = cluster_name or f"{self.app_name}-cluster"
        return parameters

    def run_infra(self,
                  template_path: Optional[str] = None,
                  vpc_id: Optional[str] = None,
                  subnet_ids: Optional[str] = None,
                  instance_type: Optional[str] = None,
                  key_name: Optional[str] = None,
                  cluster_name: Optional[str] = None) -> DeployResult:
        """Deploy the infrastructure stack and record its outputs in infrastructure.config."""
        logger.info(f"=== Infrastructure stage ({self.target.value}) ===")
        self.assume_role()

        if template_path is None:
            key = 'ec2_infrastructure_template' if self.target == DeploymentTarget.EC2 else 'ecs_infrastructure_template'
            template_path = CONFIG[key]

        parameters = self.infrastructure_parameters(vpc_id, subnet_ids, instance_type, key_name, cluster_name)
        stack_name = self.stack_name('infrastructure')

        result = self.stack_deployer().deploy(
            template_path,
            stack_name,
            self.region,
            build_parameter_overrides(parameters),
            self.stack_tags
        )

        values = {
            HANDOFF_KEYS['stack_name']: stack_name,
            HANDOFF_KEYS['region']: self.region,
        }
        values.update(result.outputs)
        self.config_store.update(self.config_store.infrastructure_path, values)

        log_success(logger, f"Infrastructure stage complete ({result.stack_status})")
        return result

    def run_deploy(self,
                   instance_id: Optional[str] = None,
                   cluster_name: Optional[str] = None,
                   image_uri: Optional[str] = None,
                   cpu: Optional[str] = None,
                   memory: Optional[str] = None,
                   desired_count: Optional[str] = None,
                   container_port: Optional[str] = None,
                   env_vars: Optional[Mapping[str, str]] = None,
                   template_path: Optional[str] = None,
                   publish_dir: Optional[str] = None,
                   artifact_bucket: Optional[str] = None) -> RolloutResult:
        """Roll the application out using the values produced by earlier stages.

        Explicit arguments take precedence over hand-off file values.
        """
        logger.info(f"=== Deploy stage ({self.target.value}) ===")
        persisted = self.load_handoff()
        self.assume_role()

        if self.target == DeploymentTarget.EC2:
            return self.rollout_ec2(
                instance_id=ConfigStore.resolve(instance_id, persisted, HANDOFF_KEYS['instance_id']),
                publish_dir=publish_dir,
                artifact_bucket=ConfigStore.resolve(
                    artifact_bucket, persisted, HANDOFF_KEYS['artifact_bucket'], CONFIG['artifact_bucket']
                ),
                artifact_uri=None if publish_dir else persisted.get(HANDOFF_KEYS['artifact_uri']),
                env_vars=env_vars
            )

        return self.rollout_ecs(
            cluster_name=ConfigStore.resolve(cluster_name, persisted, HANDOFF_KEYS['cluster_name']),
            image_uri=ConfigStore.resolve(image_uri, persisted, HANDOFF_KEYS['image_uri']),
            cpu=cpu or CONFIG['ecs_cpu'],
            memory=memory or CONFIG['ecs_memory'],
            desired_count=desired_count or CONFIG['ecs_desired_count'],
            container_port=container_port or CONFIG['container_port'],
            env_vars=env_vars,
            template_path=template_path or self.working_service_template()
        )

    def rollout_ec2(self,
                    instance_id: Optional[str],
                    publish_dir: Optional[str] = None,
                    artifact_bucket: Optional[str] = None,
                    artifact_uri: Optional[str] = None,
                    env_vars: Optional[Mapping[str, str]] = None) -> RolloutResult:
        """Install the application on an EC2 instance.

        Packaging → Uploading → AwaitingAgent → Dispatching → AwaitingCompletion,
        stopping at the first failure. Packaging and uploading are skipped when
        an already uploaded ``artifact_uri`` is given.
        """
        result = RolloutResult(target=self.target, state=RolloutState.PACKAGING)
        publisher = Ec2ArtifactPublisher(self.aws_context.client('s3'), app_name=self.app_name)
        executor = RemoteExecutor(self.aws_context.client('ssm'))

        try:
            instance_id = self._require(
                instance_id, "EC2 instance id",
                "Pass --instance-id or run the infra stage to write InstanceId to infrastructure.config"
            )

            if artifact_uri is None:
                self._enter(RolloutState.PACKAGING)
                publish_dir = self._require(publish_dir, "publish directory", "Pass --publish-dir")
                bucket = self._require(artifact_bucket, "artifact bucket",
                                       "Pass --artifact-bucket or set ARTIFACT_BUCKET")
                archive = publisher.package(
                    publish_dir,
                    service_unit=publisher.build_service_unit(environment_file=publisher.environment_file)
                )

                self._enter(RolloutState.UPLOADING)
                artifact_uri = publisher.upload(str(archive), bucket)
            else:
                logger.info(f"Using artifact from build stage: {artifact_uri}")

            self._enter(RolloutState.AWAITING_AGENT)
            executor.require_agent_ready(instance_id)

            self._enter(RolloutState.DISPATCHING)
            commands = publisher.build_install_commands(artifact_uri, region=self.region, environment=env_vars)
            handle = executor.dispatch(
                instance_id,
                CONFIG['ssm_document_name'],
                {'commands': commands},
                comment=f"Install {self.app_name}"
            )

            self._enter(RolloutState.AWAITING_COMPLETION)
            command_result = executor.await_completion(handle)
        except DeploymentException as e:
            failed_state = self.state
            self._enter(RolloutState.FAILED)
            result.state = RolloutState.FAILED
            result.errors.append(f"{failed_state.value if failed_state else 'Setup'}: {e}")
            result.stderr = getattr(e, 'stderr', '') or ''
            self.last_result = result
            raise

        self._enter(RolloutState.SUCCEEDED)
        result.state = RolloutState.SUCCEEDED
        result.stdout = command_result.stdout
        result.stderr = command_result.stderr
        result.details = {
            'InstanceId': instance_id,
            'Artifact': artifact_uri,
            'CommandId': command_result.command_id
        }
        self.last_result = result
        return result

    def rollout_ecs(self,
                    cluster_name: Optional[str],
                    image_uri: Optional[str],
                    cpu: str,
                    memory: str,
                    desired_count: str,
                    container_port: str,
                    template_path: str,
                    env_vars: Optional[Mapping[str, str]] = None) -> RolloutResult:
        """Inject environment variables into the service template and deploy it."""
        result = RolloutResult(target=self.target, state=RolloutState.PACKAGING)

        try:
            cluster_name = self._require(
                cluster_name, "ECS cluster name",
                "Pass --cluster-name or run the infra stage to write ECSClusterName to infrastructure.config"
            )
            image_uri = self._require(
                image_uri, "container image URI",
                "Pass --image-uri or run the build stage to write ContainerImageUri to build.config"
            )

            self._enter(RolloutState.PACKAGING)
            self.template_manager.inject_environment(template_path, env_vars or {})

            self._enter(RolloutState.DEPLOYING_STACK)
            parameters = {
                'AppName': self.app_name,
                'ClusterName': cluster_name,
                'ContainerImageUri': image_uri,
                'Cpu': cpu,
                'Memory': memory,
                'DesiredCount': desired_count,
                'ContainerPort': container_port,
            }
            stack_name = self.stack_name('service')
            deploy_result = self.stack_deployer().deploy(
                template_path,
                stack_name,
                self.region,
                build_parameter_overrides(parameters),
                self.stack_tags
            )
        except DeploymentException as e:
            failed_state = self.state
            self._enter(RolloutState.FAILED)
            result.state = RolloutState.FAILED
            result.errors.append(f"{failed_state.value if failed_state else 'Setup'}: {e}")
            self.last_result = result
            raise

        self._enter(RolloutState.SUCCEEDED)
        result.state = RolloutState.SUCCEEDED
        result.details = {
            'StackName': stack_name,
            'StackStatus': deploy_result.stack_status,
            'Image': image_uri,
            **deploy_result.outputs
        }
        self.last_result = result
        return result
