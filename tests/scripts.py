from nodelib.scripts.utils import DocOptArgs, entrypoint
from nodelib.services import Host, ServiceInstance, ServiceType


@entrypoint
def no_args(opts: DocOptArgs):
    """
    Usage: {script}
    """


@entrypoint
def with_type(opts: DocOptArgs, type_: ServiceType):
    """
    Usage: {script} TYPE
    """
    return type_


@entrypoint
def with_instance(opts: DocOptArgs, host: Host, instance: ServiceInstance):
    """
    Usage: {script} INSTANCE
    """
    return (host, instance)
