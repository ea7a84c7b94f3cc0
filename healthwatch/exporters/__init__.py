# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
import sys
from types import ModuleType
from typing import Dict

from healthwatch.monitoring.sink.protocol import SinkImpl
from healthwatch.monitoring.sink.utils import discover, Factory, make_register, Register

registry: Dict[str, Factory[SinkImpl]] = {}
register: Register[SinkImpl] = make_register(registry)

# sinks register themselves when their module is imported
discovered_plugins: Dict[str, ModuleType] = discover(sys.modules[__name__])
