from .common import CommandStep, ConfigUpsertStep
from .step_10_homebrew import HomebrewStep
from .step_20_lmstudio import LMStudioStep, installed_lmstudio_version
from .step_30_model import ModelDownloadStep
from .step_40_runtime import VersionInfo, node_step, openclaw_cli_step, openclaw_version_info
from .step_60_config import ApiKeyStep, ChangeModelStep, GatewayConfigStep, ModelConfigStep
from .step_70_gateway import (
    OpenDashboardStep,
    StartGatewayStep,
    dashboard_url,
    default_agent_step,
    gateway_service_step,
    repair_step,
    restart_gateway_step,
)
from .step_80_verify import VerifyStep
from .step_90_updates import LMStudioUpgradeStep, brew_update_step, node_upgrade_step, openclaw_update_step

__all__ = [
    "CommandStep",
    "ConfigUpsertStep",
    "HomebrewStep",
    "LMStudioStep",
    "installed_lmstudio_version",
    "ModelDownloadStep",
    "node_step",
    "openclaw_cli_step",
    "VersionInfo",
    "openclaw_version_info",
    "GatewayConfigStep",
    "ModelConfigStep",
    "ApiKeyStep",
    "ChangeModelStep",
    "gateway_service_step",
    "default_agent_step",
    "StartGatewayStep",
    "repair_step",
    "restart_gateway_step",
    "dashboard_url",
    "OpenDashboardStep",
    "VerifyStep",
    "brew_update_step",
    "LMStudioUpgradeStep",
    "node_upgrade_step",
    "openclaw_update_step",
]
