import setuptools

with open('README.rst', 'r', encoding='utf-8') as fh:
    long_description = fh.read()

setuptools.setup(
    name='pyabsorb',
    version='0.1.0',
    author='Thibaut Lamadon',
    author_email='thibaut.lamadon@gmail.com',
    description='Absorb high dimensional fixed effects with LSMR and CGLS',
    long_description=long_description,
    long_description_content_type='text/x-rst',
    url='https://github.com/tlamadon/pyabsorb',
    packages=setuptools.find_packages(include=['pyabsorb', 'pyabsorb.*']),
    install_requires=[
        'numpy<2',
        'pandas>=1.5',
        'bipartitepandas>=1.0.28,<1.0.37',
        'scipy',
        'multiprocess',
        'tqdm'
      ],
    extras_require={
        'test': ['pytest']
    },
    classifiers=[
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
)
