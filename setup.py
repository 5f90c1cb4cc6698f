from setuptools import setup, find_packages

package_name = 'remote_device_relay'

setup(
    name=package_name,
    version='1.0.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.10',
    install_requires=[
        'setuptools',
        'fastapi>=0.104.0',
        'uvicorn>=0.24.0',
        'websockets>=13.0',
        'httpx>=0.25.0',
        'paho-mqtt>=2.0.0',
        'numpy>=1.24.0',
        'opencv-python>=4.8.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    zip_safe=True,
    description='Rendezvous relay for remotely operated camera devices',
    license='MIT',
    entry_points={
        'console_scripts': [
            'relay-gateway = relay_gateway.main:main',
            'remote-device = client_remote.main:main',
        ],
    },
)
