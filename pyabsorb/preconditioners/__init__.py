from .jacobi import jacobi
