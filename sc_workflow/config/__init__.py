"""
配置模块

加载包内默认参数（default.yaml），并与用户配置文件、命令行参数合并
"""

import os
import copy
from typing import Optional, Dict

import yaml


DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), 'default.yaml')


def _deep_update(base: dict, override: dict) -> dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def load_config(config_path: Optional[str] = None) -> Dict[str, dict]:
    """
    读取流程参数

    参数：
    ----------
    config_path : str, optional
        用户 YAML 配置文件，只需包含要覆盖的参数

    返回：
    ----------
    config : dict
        按步骤分组的参数字典
    """
    with open(DEFAULT_CONFIG_PATH, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    if config_path is not None:
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"未找到配置文件：{config_path}")
        with open(config_path, 'r', encoding='utf-8') as f:
            user_config = yaml.safe_load(f) or {}
        unknown = set(user_config) - set(config)
        if unknown:
            raise ValueError(f"配置文件中存在未知的分组: {sorted(unknown)}")
        _deep_update(config, user_config)

    return config


def resolve_params(config: Dict[str, dict], overrides: Dict[str, dict]) -> Dict[str, dict]:
    """
    用命令行参数覆盖配置

    参数：
    ----------
    config : dict
        load_config 的返回值
    overrides : dict
        {分组: {参数: 值}}，值为 None 的参数表示命令行未指定，保持配置不变

    返回：
    ----------
    dict
        合并后的新配置（不修改输入）
    """
    resolved = copy.deepcopy(config)
    for section, params in overrides.items():
        target = resolved.setdefault(section, {})
        for key, value in params.items():
            if value is not None:
                target[key] = value
    return resolved
