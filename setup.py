from setuptools import find_packages, setup

setup(
    name='gaugex',
    version='0.1.0',
    description='Lattice gauge field Monte Carlo, smearing and gradient flow with JAX.',
    package_dir={'': 'src'},
    packages=find_packages(where='src', include=['gaugex', 'gaugex.*']),
    install_requires=[
        'numpy',
        'jax',
        'chex',
        'einops',
        'flax',
        'jax_autovmap',
    ],
    extras_require={
        'test': [
            'pytest',
            'hypothesis',
        ],
    },
    python_requires='>=3.10',
)
