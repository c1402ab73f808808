# -*- coding: utf-8 -
import os
from setuptools import setup, find_packages


def read(fname):
    return open(os.path.join(os.path.dirname(__file__), fname)).read()


setup(
    name="throttler",
    version=read("throttler/version.txt").strip(),
    description="Time-varying network impairment of groups of processes",
    license="GPL-3.0",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: GNU General Public License v3 (GPLv3)",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
    ],
    keywords="Network emulation, Traffic control, Netem, Testing",
    long_description=read("README.rst"),
    packages=find_packages(),
    python_requires=">=3.8",
    install_requires=[
        "jsonschema>=3.2",
        "jinja2>=2.11",
        "pyyaml>=5.1",
    ],
    extras_require={
        "test": ["pytest", "ddt"],
    },
    include_package_data=True,
    package_data={"throttler": ["version.txt", "templates/*.j2"]},
)
