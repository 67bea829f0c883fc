from setuptools import setup
from pathlib import Path

readme = Path(__file__).parent / "README.md"
long_description = readme.read_text() if readme.exists() else ""

setup(
    name='pvc-migrate',
    version='1.0.0',
    description='Migrate an automation controller backup PVC between two clusters',
    long_description=long_description,
    long_description_content_type='text/markdown',
    # Explicitly list packages and their source directories
    packages=['pvcm', 'pvcm_common'],
    package_dir={
        'pvcm': 'cli/pvcm',
        'pvcm_common': 'pvcm_common',
    },
    install_requires=[
        'kubernetes>=28.1.0',
        'PyYAML>=6.0',
        'requests>=2.31',
        'urllib3>=1.26',
    ],
    extras_require={
        'test': [
            'pytest>=7.4',
        ],
    },
    entry_points={
        'console_scripts': [
            'pvcm=pvcm.main:main',
        ],
    },
    python_requires='>=3.11',
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: System Administrators',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Programming Language :: Python :: 3.13',
    ],
)
