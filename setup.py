import re
import sys

from setuptools import find_packages, setup
"""
linux:
rm -rf "dist/*";rm -rf "build/*";python3 setup.py bdist_wheel;twine upload "dist/*;rm -rf "dist/*";rm -rf "build/*""
"""
if sys.version_info < (3, 7):
    sys.exit("iforward requires Python 3.7+")
with open("iforward/__init__.py", encoding="utf-8") as f:
    version = re.search(r'^__version__ = "(.*?)"', f.read(), re.M).group(1)
with open('requirements.txt') as f:
    install_requires = f.read().strip().splitlines()
with open("README.md", encoding="utf-8") as f:
    README = f.read()
desc = "Multi-listener TCP/UDP port forwarder, one single-threaded event loop per rule and one process per listener."
setup(
    name="iforward",
    version=version,
    keywords=['port forward', 'tcp', 'udp', 'relay', 'tunnel'],
    description=desc,
    license="MIT License",
    install_requires=install_requires,
    long_description=README,
    long_description_content_type="text/markdown",
    extras_require={'test': ['pytest']},
    packages=find_packages(exclude=["tests", "tests.*"]),
    entry_points={"console_scripts": ["iforward=iforward.__main__:main"]},
    platforms="any",
    python_requires=">=3.7",
    classifiers=[
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.7",
        "Programming Language :: Python :: 3.8",
    ],
)
