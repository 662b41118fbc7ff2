# Databricks notebook source
from mysqldriver import check_connections

errors = check_connections("/Workspace/Shared/MysqlDriver/Configuration/Connections/")

# COMMAND ----------

if errors:
    raise Exception(f"Invalid connections {', '.join(errors)}")
