from setuptools import find_packages, setup

with open('README.md', 'r', encoding='utf-8') as f:
    readme = f.read()

setup(
    name='pyd9',
    version='0.1.0',
    packages=find_packages(),
    install_requires=['pycryptodomex>=3.9,<4', 'fs>=2.4'],
    extras_require={'test': ['pytest>=6']},
    python_requires='>=3.6',
    license='MIT',
    author='pyd9 contributors',
    description='Python library and tool to decrypt Nintendo 3DS NAND images and generate xorpads',
    long_description=readme,
    long_description_content_type='text/markdown',
    entry_points={'console_scripts': ['pyd9 = pyd9.cmd.__main__:main']},
    classifiers=[
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.6',
        'Programming Language :: Python :: 3.7',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
    ]
)
