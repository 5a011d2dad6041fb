from .sizing_config import InstanceConfig, OperatorConfig, load_instance_config, load_sizing_config

__all__ = ["InstanceConfig", "OperatorConfig", "load_instance_config", "load_sizing_config"]
