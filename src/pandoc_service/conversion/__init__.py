"""
Domain layer for document conversion.
Provides interfaces (gateways), workspace handling and a service to run
conversions, abstracting the pandoc subprocess so front-ends (HTTP or
others) can use the same core logic.
"""

from .interfaces import ConversionRequest, ConverterGateway, EngineInvocation, Notifier, WorkspacePaths
from .adapters import PandocConverter, build_invocation
from .service import ConversionService
