import os.path

from setuptools import find_packages, setup

try:
    # Import all script providers so that ENTRYPOINTS gets populated.
    from nodelib.scripts import monitoring, service  # noqa: F401
    from nodelib.scripts.utils import ENTRYPOINTS
except ImportError:
    # Avoid chicken-and-egg dependency requirements during initial installation.
    # This means you need to re-run setup in order to gain script entrypoints.
    ENTRYPOINTS = []


README = os.path.join(os.path.abspath(os.path.dirname(__file__)), "README.rst")


setup(name="nodelib",
      version="0.4.0",
      description="Lifecycle orchestration for containerised single-host staking stacks.",
      long_description=open(README).read(),
      long_description_content_type="text/x-rst",
      author="nodeboi maintainers",
      platforms=["Linux"],
      python_requires=">=3.7",
      install_requires=["docopt", "jinja2", "PyYAML", "requests"],
      packages=find_packages(exclude=["tests", "tests.*"]),
      package_data={"nodelib.artifacts": ["templates/*.j2"]},
      entry_points={"console_scripts": ENTRYPOINTS})
