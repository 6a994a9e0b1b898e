from setuptools import setup, find_packages

setup(
    name="inbox-rules-pipeline",
    version="0.1",
    packages=find_packages(include=['src', 'src.*']),
    python_requires='>=3.10',
    install_requires=[
        'google-auth>=2.20',
        'google-auth-httplib2>=0.1.0',
        'google-api-python-client>=2.86.0',
        'SQLAlchemy>=2.0.19',
        'python-dateutil>=2.8.2',
        'python-dotenv>=1.0.0',
        'pydantic>=2.6.1',
        'pydantic-settings>=2.2.0',
        'structlog>=23.1.0',
        'anthropic>=0.40.0',
        'httpx>=0.27.0',
        'redis>=5.0.0',
        'fastapi>=0.110.0',
        'uvicorn>=0.29.0',
    ],
    extras_require={
        'test': [
            'pytest>=8.0.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'inbox-rules=src.main:main',
        ],
    },
)
