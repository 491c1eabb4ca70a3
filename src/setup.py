import os
from setuptools import setup, find_packages

def parse_requirements(requirements):
    with open(requirements) as f:
        return [l.strip('\n') for l in f if l.strip('\n') and not l.startswith('#')]

requirements = parse_requirements(os.path.join(os.path.dirname(os.path.abspath(__file__)), "requirements.txt"))

setup(
    name='integram_compat',
    version='0.0.1',
    install_requires=requirements,
    extras_require={
        "test": ["pytest", "httpx"],
    },
    packages=find_packages(include=["integram_compat", "integram_compat.*"]),
    entry_points={
        "console_scripts": [
            "integram=integram_compat.cli.cli:cli",
        ],
    }
)
