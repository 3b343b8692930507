from setuptools import setup, find_packages

setup(
    name='joinctl',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    install_requires=[
        'typer[all]',
        'fastapi',
        'uvicorn',
        'kubernetes',
        'python-dotenv',
        'requests',
        'paramiko',
        'pyyaml',
        'pydantic>=2',
        'jsonschema',
    ],
    extras_require={
        'test': [
            'pytest',
            'httpx',
        ],
    },
    entry_points={
        'console_scripts': [
            'joinctl=joinctl.cli:app'
        ]
    },
    author='Your Name',
    description='CLI and API toolkit for the K3S cluster join token handshake',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.9',
)
