"""Setup configuration for synapse-migration-foundry package."""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
readme_file = Path(__file__).parent / "README.md"
long_description = (
    readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""
)

setup(
    name="synapse-migration-foundry",
    version="1.0.0",
    description="Inflate, export and PolyBase-load SQL Server tables into a dedicated SQL pool",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Tony Sebion",
    packages=find_packages(exclude=["tests", "tests.*", "docs", "docs.*"]),
    python_requires=">=3.9",
    install_requires=[
        "adlfs>=2023.1.0",  # Azure Blob staging
        "ibis-framework[duckdb,mssql]>=9.0.0",
        "sqlglot<30",  # sqlglot 30 breaks ibis create_table on DuckDB
        "pandas>=1.5.0",
        "pyodbc>=4.0.0",
        "python-dotenv>=1.0.0",
        "pyyaml>=6.0",
        "tenacity>=8.0.0",  # For retry logic
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "black>=22.0.0",
            "ruff>=0.1.0",
            "mypy>=0.990",
        ],
    },
    entry_points={
        "console_scripts": [
            "synapse-migrate=migration.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Database",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    keywords="data-engineering synapse polybase sql-server data-migration azure-blob",
)
