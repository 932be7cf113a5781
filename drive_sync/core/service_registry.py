"""
Drive Sync System - Service Registry
同期サービス設定と信頼性設定の管理とバリデーション
"""

import json
import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from ..exceptions import ConfigurationError, ServiceNotFoundError, ValidationError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DRIVE_SYNC_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.drive_sync/config.yaml")
SERVICE_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_\-]*$")

DEFAULT_ICLOUD_PATH = "~/Library/Mobile Documents/com~apple~CloudDocs"
DEFAULT_GDRIVE_PATH = "~/Library/CloudStorage/GoogleDrive/My Drive"
DEFAULT_SYNC_HUB = "~/Sync_Hub"


class ServiceConfig(BaseModel):
    """同期サービス設定のデータモデル"""

    service_id: str = Field(..., description="サービスID (icloud, google_drive等)")
    display_name: str = Field(default="", description="表示名")
    sync_root: str = Field(..., description="ローカル側の同期ルート")
    remote_root: str = Field(..., description="クラウドのマウントポイント")
    profile_name: str = Field(..., description="Unisonプロファイル名")
    credential_refresh_command: List[str] = Field(default_factory=list, description="認証更新コマンド")
    endpoints: List[str] = Field(default_factory=list, description="疎通確認するエンドポイント")
    enabled: bool = Field(default=True, description="同期対象かどうか")

    @field_validator('service_id')
    @classmethod
    def validate_service_id(cls, v):
        """サービスIDのバリデーション"""
        v = v.strip()
        if not SERVICE_ID_PATTERN.match(v):
            raise ValueError("Service id must be lowercase letters, digits, '_' or '-'")
        return v

    @field_validator('sync_root', 'remote_root', 'profile_name')
    @classmethod
    def validate_not_empty(cls, v):
        """空文字のバリデーション"""
        if not v.strip():
            raise ValueError("Value cannot be empty")
        return v.strip()

    @property
    def sync_root_path(self) -> Path:
        return Path(self.sync_root).expanduser()

    @property
    def remote_root_path(self) -> Path:
        return Path(self.remote_root).expanduser()


class ReliabilitySettings(BaseModel):
    """信頼性レイヤー設定のデータモデル"""

    max_retries: int = Field(default=3, description="1サイクルの最大試行回数")
    base_timeout: float = Field(default=300, description="同期1回の基本タイムアウト（秒）")
    base_retry_delay: float = Field(default=30, description="再試行遅延の基準値（秒）")
    max_retry_delay: float = Field(default=300, description="再試行遅延の上限（秒）")
    cycle_deadline: Optional[float] = Field(default=None, description="1サイクル全体の上限（秒）")
    state_file: str = Field(default="~/.drive_sync/circuit_breaker_state.json", description="状態ファイル")
    log_dir: str = Field(default="~/.drive_sync/logs", description="ログディレクトリ")
    backup_dir: str = Field(default="~/.drive_sync/backups", description="バックアップディレクトリ")
    lock_dir: str = Field(default="~/.drive_sync/locks", description="実行ロックディレクトリ")
    profile_dir: str = Field(default="~/.unison", description="Unisonのプロファイル・アーカイブ")
    profile_backup_dir: Optional[str] = Field(default=None, description="プロファイルのバックアップ")
    unison_binary: str = Field(default="unison", description="unisonの実行ファイル")
    connectivity_probe_hosts: List[str] = Field(default_factory=lambda: ["8.8.8.8", "1.1.1.1"])
    connectivity_wait_seconds: float = Field(default=300, description="ネットワーク回復の待機上限（秒）")
    connectivity_interval: float = Field(default=10, description="ネットワーク確認の間隔（秒）")
    mount_wait_seconds: float = Field(default=120, description="同期前にマウントを待つ上限（秒）")
    mount_check_interval: float = Field(default=2, description="マウント確認の間隔（秒）")
    min_free_bytes: int = Field(default=1024 ** 3, description="必要な空き容量（バイト）")
    lock_timeout: float = Field(default=10, description="状態ストアのロック待ち上限（秒）")

    @field_validator('max_retries')
    @classmethod
    def validate_max_retries(cls, v):
        """最大試行回数のバリデーション"""
        if v < 1:
            raise ValueError("max_retries must be at least 1")
        if v > 20:
            raise ValueError("max_retries cannot exceed 20")
        return v

    @field_validator('base_timeout', 'base_retry_delay', 'max_retry_delay', 'lock_timeout',
                     'mount_check_interval')
    @classmethod
    def validate_positive(cls, v):
        """正の値のバリデーション"""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator('mount_wait_seconds')
    @classmethod
    def validate_non_negative(cls, v):
        """0以上のバリデーション（0ならマウントを1回だけ確認）"""
        if v < 0:
            raise ValueError("Value cannot be negative")
        return v

    @field_validator('cycle_deadline')
    @classmethod
    def validate_deadline(cls, v):
        """期限のバリデーション"""
        if v is not None and v <= 0:
            raise ValueError("cycle_deadline must be positive")
        return v

    def path(self, name: str) -> Path:
        """パス設定を展開して取得"""
        return Path(getattr(self, name)).expanduser()


class ServiceRegistry:
    """同期サービス設定レジストリ

    設定ファイル（YAMLまたはJSON）の読み込み、保存、バリデーションを担当する。
    ファイルが無い場合は環境変数から既定のサービスを組み立てる。
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        """
        初期化

        Args:
            config_path: 設定ファイルのパス。Noneの場合は環境変数 DRIVE_SYNC_CONFIG か既定パス
        """
        if config_path is None:
            config_path = os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH

        self.config_path = Path(config_path).expanduser().resolve()
        self._services: Dict[str, ServiceConfig] = {}
        self._settings: ReliabilitySettings = ReliabilitySettings()
        self._config_version: str = "1.0.0"
        self._last_loaded: Optional[datetime] = None

        logger.info(f"ServiceRegistry initialized with config: {self.config_path}")

    def _read_config_file(self) -> Dict[str, Any]:
        with open(self.config_path, 'r', encoding='utf-8') as f:
            if self.config_path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError("Config file must contain a mapping", str(self.config_path))
        return data

    def load_config(self, reload: bool = False) -> Dict[str, Any]:
        """
        設定ファイルの読み込み

        Args:
            reload: 強制的に再読み込みするか

        Returns:
            読み込まれた設定データ

        Raises:
            ConfigurationError: 設定ファイルの読み込みに失敗した場合
            ValidationError: 設定データのバリデーションに失敗した場合
        """
        if self._last_loaded and not reload:
            logger.debug("Config already loaded, skipping reload")
            return self._export_config()

        try:
            if self.config_path.exists():
                config_data = self._read_config_file()
                logger.info(f"Config loaded from: {self.config_path}")
            else:
                config_data = self._get_default_config()
                logger.info("Using default configuration")
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            error_msg = f"Invalid config file: {self.config_path}"
            logger.error(f"{error_msg}: {e}")
            raise ConfigurationError(error_msg, str(e))
        except OSError as e:
            error_msg = f"Failed to load configuration: {self.config_path}"
            logger.error(f"{error_msg}: {e}")
            raise ConfigurationError(error_msg, str(e))

        self._validate_and_load_config(config_data)
        self._last_loaded = datetime.now()
        return config_data

    def _validate_and_load_config(self, config_data: Dict[str, Any]) -> None:
        """設定データのバリデーションと読み込み"""
        self._config_version = str(config_data.get("version", "1.0.0"))

        try:
            self._settings = ReliabilitySettings(**(config_data.get("reliability") or {}))
        except ValueError as e:
            error_msg = "Invalid reliability settings"
            logger.error(f"{error_msg}: {e}")
            raise ValidationError(error_msg, str(e))

        services: Dict[str, ServiceConfig] = {}
        for service_id, service_data in (config_data.get("services") or {}).items():
            try:
                services[service_id] = ServiceConfig(service_id=service_id, **(service_data or {}))
                logger.debug(f"Loaded service: {service_id}")
            except (TypeError, ValueError) as e:
                logger.warning(f"Failed to load service {service_id}: {e}")
                continue

        self._services = services
        logger.info(f"Successfully loaded {len(self._services)} services")

    def save_config(self) -> None:
        """
        現在の設定をファイルに保存

        Raises:
            ConfigurationError: 設定ファイルの保存に失敗した場合
        """
        config_data = self._export_config()
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                if self.config_path.suffix == ".json":
                    json.dump(config_data, f, ensure_ascii=False, indent=2)
                else:
                    yaml.safe_dump(config_data, f, allow_unicode=True, sort_keys=False)
            logger.info(f"Config saved to: {self.config_path}")
        except OSError as e:
            error_msg = f"Failed to save configuration: {self.config_path}"
            logger.error(f"{error_msg}: {e}")
            raise ConfigurationError(error_msg, str(e))

    def _export_config(self) -> Dict[str, Any]:
        """設定データのエクスポート"""
        return {
            "version": self._config_version,
            "services": {
                service_id: service.model_dump(exclude={"service_id"})
                for service_id, service in self._services.items()
            },
            "reliability": self._settings.model_dump(),
        }

    def _ensure_loaded(self) -> None:
        if self._last_loaded is None:
            self.load_config()

    def get_service(self, service_id: str) -> Optional[ServiceConfig]:
        """
        サービス設定の取得

        Returns:
            サービス設定。見つからない場合はNone
        """
        self._ensure_loaded()
        return self._services.get(service_id)

    def require_service(self, service_id: str) -> ServiceConfig:
        """サービス設定の取得（見つからない場合は ServiceNotFoundError）"""
        service = self.get_service(service_id)
        if service is None:
            raise ServiceNotFoundError("Service not found", service_id)
        return service

    def list_services(self, enabled_only: bool = True) -> Dict[str, ServiceConfig]:
        """サービス一覧の取得"""
        self._ensure_loaded()
        if enabled_only:
            return {
                service_id: service
                for service_id, service in self._services.items()
                if service.enabled
            }
        return dict(self._services)

    def add_service(self, service: ServiceConfig) -> None:
        """
        サービスの追加

        Raises:
            ValidationError: サービスIDが既に存在する場合
        """
        self._ensure_loaded()
        if service.service_id in self._services:
            raise ValidationError("Service already exists", service.service_id)
        self._services[service.service_id] = service
        logger.info(f"Service added: {service.service_id}")

    def get_settings(self) -> ReliabilitySettings:
        """信頼性設定の取得"""
        self._ensure_loaded()
        return self._settings

    def _get_default_config(self) -> Dict[str, Any]:
        """デフォルト設定の取得（環境変数 ICLOUD_PATH / GDRIVE_PATH / SYNC_HUB）"""
        sync_hub = os.environ.get("SYNC_HUB", DEFAULT_SYNC_HUB)
        return {
            "version": "1.0.0",
            "services": {
                "icloud": {
                    "display_name": "iCloud Drive",
                    "sync_root": sync_hub,
                    "remote_root": os.environ.get("ICLOUD_PATH", DEFAULT_ICLOUD_PATH),
                    "profile_name": "icloud",
                    "endpoints": ["https://www.icloud.com"],
                },
                "google_drive": {
                    "display_name": "Google Drive",
                    "sync_root": sync_hub,
                    "remote_root": os.environ.get("GDRIVE_PATH", DEFAULT_GDRIVE_PATH),
                    "profile_name": "google_drive",
                    "endpoints": ["https://www.googleapis.com/drive/v3/about"],
                },
            },
            "reliability": {},
        }
