from fulfillment.core.execution.http import AutomatedExecutor, env_secret_resolver, render_template
from fulfillment.core.execution.pool import TaskWorkerPool

__all__ = ["AutomatedExecutor", "TaskWorkerPool", "env_secret_resolver", "render_template"]
