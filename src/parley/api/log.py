from litestar.plugins.structlog import StructlogPlugin

structlog_plugin = StructlogPlugin()
