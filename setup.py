from setuptools import setup, find_packages
import os

# Function to read requirements
def read_requirements(filename="requirements.txt"):
    with open(os.path.join(os.path.dirname(__file__), filename), "r") as f:
        return [line for line in f.read().splitlines() if line and not line.startswith("#")]

# Function to read the README
def read_readme(filename="README.md"):
    with open(os.path.join(os.path.dirname(__file__), filename), "r", encoding="utf-8") as f:
        return f.read()

setup(
    name="django-db-analyst",
    version="0.1.0",
    packages=find_packages(include=["db_analyst", "db_analyst.*"]),
    include_package_data=True,
    install_requires=read_requirements(), # Get dependencies from requirements.txt
    extras_require={"test": ["pytest>=7.0", "pytest-django>=4.5"]},
    description="A Django app for an LLM database analyst: parses SQL out of assistant replies, validates it against a read-only policy and executes it.",
    long_description=read_readme(),
    long_description_content_type="text/markdown",
    classifiers=[
        "Environment :: Web Environment",
        "Framework :: Django",
        "Framework :: Django :: 3.2",
        "Framework :: Django :: 4.0",
        "Framework :: Django :: 5.0",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Database",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
    python_requires='>=3.8',
) 