from setuptools import setup, find_packages

setup(
    name='layerpatch',
    version='0.1.0',
    description='Keep a base game and its mods up to date from full-replacement patch archives',
    package_dir={'': 'src'},
    packages=find_packages('src'),
    python_requires='>=3.10',
    install_requires=[
        'requests',
        'urllib3',
        'PyYAML',
        'rich',
        'platformdirs',
        'py7zr',
    ],
    extras_require={
        'test': [
            'pytest<9',
            'pytest-mock',
        ],
    },
    entry_points={
        'console_scripts': [
            'layerpatch=layerpatch.cli:main',
        ],
    },
)
