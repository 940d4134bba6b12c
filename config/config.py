from typing import Optional

import os
import yaml
import logging

CONFIG_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_PATH = os.path.join(CONFIG_DIR, 'default.yaml')
SCENARIOS = ('mean', 'covariate')

class Config(dict):
    def __getattr__(self, key):
        try:
            val = self[key]
        except KeyError:
            return super().__getattribute__(key)
        if isinstance(val, dict):
            return Config(val)
        return val

def load_config(path: str, default_path: Optional[str]) -> Config:
    with open(path) as f:
        cfg = Config(yaml.full_load(f))
    if default_path is not None:
        # set keys not included in `path` by default
        with open(default_path) as f:
            default_cfg = Config(yaml.full_load(f))
        for key, val in default_cfg.items():
            if key not in cfg:
                logging.debug(f"used default config {key}: {val}")
                cfg[key] = val
    return cfg

def load_scenario(scenario: str) -> Config:
    '''Config for one of the scenarios in config/scenarios.'''
    if scenario not in SCENARIOS:
        raise ValueError(f'unknown scenario {scenario}, expected {SCENARIOS}')
    path = os.path.join(CONFIG_DIR, 'scenarios', f'{scenario}.yaml')
    return load_config(path, DEFAULT_PATH)
