from setuptools import setup, find_packages

setup(
    name='package-provisioner',
    version='0.1',
    packages=find_packages(include=['provisioner', 'provisioner.*']),
    install_requires=[
        'loguru',
        'pynvml',
        'psutil',
        'dacite',
        'pyyaml',
    ],
    extras_require={
        'test': ['pytest'],
    }
)
