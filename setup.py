"""
kgflow Setup Script

Install with: pip install -e .
"""

from setuptools import setup, find_packages

setup(
    name='kgflow',
    version='0.1.0',
    description='Retrieval pipelines over knowledge graphs: FalkorDB queries, vector search and LLM reranking',
    author='kgflow Team',
    packages=find_packages(include=['kgflow', 'kgflow.*']),
    package_data={
        'kgflow.config': ['pipeline.yaml'],
    },
    install_requires=[
        'falkordb>=1.0.0',
        'structlog>=23.2.0',
        'pyyaml>=6.0.1',
        'aiohttp>=3.9.0',
        'beautifulsoup4>=4.12.0',
        'lxml>=4.9.0',
    ],
    extras_require={
        'embeddings': [
            'sentence-transformers>=2.2.0',
            'torch>=2.0.0',
        ],
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.21.0',
        ],
    },
    python_requires='>=3.11',
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Intended Audience :: Science/Research',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Scientific/Engineering :: Artificial Intelligence',
        'Topic :: Database',
    ],
)
