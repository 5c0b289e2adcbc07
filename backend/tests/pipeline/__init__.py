"""Pipeline tests"""
