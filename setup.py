from setuptools import find_namespace_packages, setup

setup(
    name='ilovevideo',
    version='0.1',
    packages=find_namespace_packages(include=['ilovevideo', 'ilovevideo.*']),
    python_requires='>=3.9',
    install_requires=[
        'fastapi',
        'uvicorn',
        'python-multipart',
        'python-dotenv',
        'requests'
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
            'httpx'
        ],
    },
)
