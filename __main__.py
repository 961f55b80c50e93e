import pulumi as p

from timers.config import ComponentConfig
from timers.deploy import create_timers
from timers.log import configure_logging

component_config = ComponentConfig.model_validate(p.Config().get_object('config') or {})

configure_logging(component_config.log_level)

create_timers(component_config)
