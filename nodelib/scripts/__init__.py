"""
Command line entry points, installed as `nodelib-<module>-<function>` console scripts.
"""
