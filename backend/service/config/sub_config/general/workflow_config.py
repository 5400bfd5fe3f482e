"""
Workflow Editor Configuration.

Controls where the editor reaches the workflow / agent services,
where local workflow files are kept, and editor defaults for new
loop clusters.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

from service.config.base import BaseConfig, ConfigField, FieldType, register_config
from service.config.sub_config.general.env_utils import env_sync, read_env_defaults

_DEFAULT_STORAGE_DIR = Path(__file__).resolve().parents[4] / "workflows"


@register_config
@dataclass
class WorkflowEditorConfig(BaseConfig):
    """Workflow service endpoints and editor defaults."""

    api_base_url: str = "http://localhost:8787"
    agent_api_base_url: str = "http://localhost:8000"
    request_timeout: int = 30
    storage_dir: str = ""
    default_loop_max_iters: int = 3
    max_version_history: int = 20

    _ENV_MAP = {
        "api_base_url": "WORKFLOW_API_URL",
        "agent_api_base_url": "AGENT_API_URL",
        "request_timeout": "WORKFLOW_API_TIMEOUT",
        "storage_dir": "WORKFLOW_STORAGE_DIR",
        "default_loop_max_iters": "WORKFLOW_LOOP_MAX_ITERS",
        "max_version_history": "WORKFLOW_MAX_VERSIONS",
    }

    @classmethod
    def get_default_instance(cls) -> "WorkflowEditorConfig":
        defaults = read_env_defaults(cls._ENV_MAP, cls.__dataclass_fields__)
        return cls(**defaults)

    @classmethod
    def get_config_name(cls) -> str:
        return "workflow_editor"

    @classmethod
    def get_display_name(cls) -> str:
        return "Workflow Editor"

    @classmethod
    def get_description(cls) -> str:
        return "Workflow / agent service endpoints, local storage and editor defaults."

    @classmethod
    def get_category(cls) -> str:
        return "general"

    @classmethod
    def get_icon(cls) -> str:
        return "workflow"

    def resolved_storage_dir(self) -> Path:
        """``storage_dir`` as a path, falling back to ``backend/workflows``."""
        return Path(self.storage_dir) if self.storage_dir else _DEFAULT_STORAGE_DIR

    @classmethod
    def get_i18n(cls) -> Dict[str, Dict[str, Any]]:
        return {
            "ko": {
                "display_name": "워크플로 편집기",
                "description": "워크플로/에이전트 서비스 주소, 로컬 저장소 및 편집기 기본값.",
                "groups": {
                    "service": "서비스",
                    "editor": "편집기",
                },
                "fields": {
                    "api_base_url": {
                        "label": "워크플로 API 주소",
                        "description": "워크플로 저장/검증/실행 서비스의 기본 URL",
                    },
                    "agent_api_base_url": {
                        "label": "에이전트 API 주소",
                        "description": "에이전트 목록 서비스의 기본 URL",
                    },
                    "request_timeout": {
                        "label": "요청 제한 시간",
                        "description": "서비스 요청 제한 시간 (초)",
                    },
                    "storage_dir": {
                        "label": "로컬 저장 경로",
                        "description": "로컬 워크플로 JSON 파일 디렉터리",
                    },
                    "default_loop_max_iters": {
                        "label": "기본 최대 반복 횟수",
                        "description": "새 루프 노드의 max_iters 기본값",
                    },
                    "max_version_history": {
                        "label": "버전 기록 개수",
                        "description": "워크플로당 보관할 최대 버전 수",
                    },
                },
            }
        }

    @classmethod
    def get_fields_metadata(cls) -> List[ConfigField]:
        return [
            ConfigField(
                name="api_base_url",
                field_type=FieldType.URL,
                label="Workflow API URL",
                description="Base URL of the workflow save / validate / execute service",
                default="http://localhost:8787",
                required=True,
                placeholder="http://localhost:8787",
                group="service",
                apply_change=env_sync("WORKFLOW_API_URL"),
            ),
            ConfigField(
                name="agent_api_base_url",
                field_type=FieldType.URL,
                label="Agent API URL",
                description="Base URL of the agent directory service",
                default="http://localhost:8000",
                placeholder="http://localhost:8000",
                group="service",
                apply_change=env_sync("AGENT_API_URL"),
            ),
            ConfigField(
                name="request_timeout",
                field_type=FieldType.NUMBER,
                label="Request Timeout",
                description="Timeout in seconds for service requests",
                default=30,
                min_value=1,
                max_value=600,
                group="service",
                apply_change=env_sync("WORKFLOW_API_TIMEOUT"),
            ),
            ConfigField(
                name="storage_dir",
                field_type=FieldType.PATH,
                label="Local Storage Directory",
                description="Directory for locally stored workflow JSON files",
                placeholder=str(_DEFAULT_STORAGE_DIR),
                group="editor",
                apply_change=env_sync("WORKFLOW_STORAGE_DIR"),
            ),
            ConfigField(
                name="default_loop_max_iters",
                field_type=FieldType.NUMBER,
                label="Default Loop Max Iterations",
                description="max_iters given to newly created loop nodes",
                default=3,
                min_value=1,
                max_value=100,
                group="editor",
                apply_change=env_sync("WORKFLOW_LOOP_MAX_ITERS"),
            ),
            ConfigField(
                name="max_version_history",
                field_type=FieldType.NUMBER,
                label="Version History Size",
                description="Maximum stored versions per workflow",
                default=20,
                min_value=1,
                max_value=500,
                group="editor",
                apply_change=env_sync("WORKFLOW_MAX_VERSIONS"),
            ),
        ]
