"""TV Server 服务入口"""

import logging
import os
import sys
from pathlib import Path

import uvicorn
import yaml

from store import Store
import auth
import web

log = logging.getLogger(__name__)


def setup_logging(config: dict):
    level = str(config.get("logging", {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s  %(message)s",
        datefmt="%H:%M:%S",
    )


def load_config(path: str = "config.yaml") -> dict:
    """加载配置文件"""
    config_path = Path(path)
    if not config_path.exists():
        logging.basicConfig(level=logging.INFO)
        log.error("配置文件不存在: %s", config_path.absolute())
        log.info("可参考 config.example.yaml 创建")
        sys.exit(1)

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    setup_logging(config)
    log.info("配置已加载: %s", config_path)
    return config


def main():
    config = load_config(os.getenv("TV_SERVER_CONFIG", "config.yaml"))

    auth_cfg = config.get("auth", {})
    if auth_cfg.get("secret_key", "change-me") == "change-me":
        log.warning("auth.secret_key 仍是默认值，请在 config.yaml 中修改")

    db_path = os.getenv("TV_SERVER_DB_FILE") or config.get("database", {}).get("path", "data/data.db")
    store = Store(db_path)

    # 初始化认证
    auth.init_auth(config, store)

    # 注入到 Web 模块
    web.init_app(store)

    web_cfg = config.get("web", {})
    host = web_cfg.get("host", "0.0.0.0")
    port = web_cfg.get("port", 8080)
    log.info("服务地址: http://localhost:%d", port)
    uvicorn.run(web.app, host=host, port=port, log_level="warning")


if __name__ == "__main__":
    main()
