"""
Scripts to manage the metrics stack.
"""

from ..errors import NodeLibError
from ..services import Host
from ..tasks import monitoring
from .utils import DocOptArgs, entrypoint, error


@entrypoint
def regenerate(opts: DocOptArgs, host: Host):
    """
    Rebuild the metrics stack's configuration from the installed instances, and reload it.

    Usage: {script}
    """
    try:
        result = monitoring.refresh(host)
    except NodeLibError as ex:
        error(str(ex), exit=1)
    print(result)
    return result
