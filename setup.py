import os
import re
import setuptools


# for simplicity we actually store the version in the __version__ attribute in the source
here = os.path.realpath(os.path.dirname(__file__))
with open(os.path.join(here, 'torchsens', '__init__.py')) as f:
    meta_match = re.search(r"^__version__ = ['\"]([^'\"]*)['\"]", f.read(), re.M)
    if meta_match:
        version = meta_match.group(1)
    else:
        raise RuntimeError("Unable to find __version__ string.")


setuptools.setup(
    name="torchsens",
    version=version,
    description="Forward and adjoint sensitivity analysis of ODEs in PyTorch.",
    packages=setuptools.find_packages(exclude=['tests']),
    install_requires=['torch>=1.11.0', 'numpy'],
    extras_require={
        'test': ['scipy', 'pytest'],
    },
    python_requires='>=3.7',
    classifiers=[
        "Programming Language :: Python :: 3",
    ],
)
