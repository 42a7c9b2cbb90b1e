"""
Setup script for DocJobs.
"""

from setuptools import setup, find_packages

setup(
    name="docjobs",
    version="1.0.0",  # Must match docjobs.__version__
    description="Job admission and execution for multi-tenant document processing",
    packages=find_packages(exclude=['tests', 'tests.*']),
    package_data={
        'docjobs': ['config/default_config.yaml'],
    },
    include_package_data=True,
    python_requires='>=3.10',
    install_requires=[
        'pyyaml',
        'sqlalchemy>=2.0',
        'pydantic>=2.0',
        'boto3',
        'redis',
        'click'
    ],
    extras_require={
        'test': [
            'pytest',
            'moto>=5.0'
        ],
        'postgres': [
            'psycopg2-binary'
        ]
    },
    entry_points={
        'console_scripts': [
            'docjobs=docjobs.cli:cli',
        ],
    },
)
