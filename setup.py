from setuptools import setup, find_packages

setup(
    name="blockfusion",
    version="1.0.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.1.0",
        "numpy>=1.26.4",
        "tqdm>=4.66.1",
        "pyyaml>=6.0.1",
        "open3d>=0.17.0",
        "trimesh>=4.0.5",
    ],
    extras_require={
        "test": ["pytest>=7.4.0"],
    },
    author="BlockFusion Team",
    description="Sparse voxel block grid for TSDF fusion, ray casting and surface extraction",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    license="MIT",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Visualization",
        "Topic :: Multimedia :: Graphics :: 3D Modeling",
    ],
    keywords="tsdf, volumetric fusion, voxel hashing, rgbd, 3d reconstruction",
    include_package_data=True,
    zip_safe=False,
)
