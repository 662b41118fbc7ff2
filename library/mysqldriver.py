from collections.abc import Mapping, MutableMapping
from enum import Enum
from os import environ, listdir
from os.path import isfile, join
from types import MappingProxyType
from urllib.parse import parse_qsl, urlencode

import boto3
from pyspark.sql import SparkSession
from yaml import safe_load

# Define secret store locations.
PARAMETER_STORE = environ.get("MYSQLDRIVER_PARAMETER_STORE")    # Use aws parameter store when set.
SECRET_SCOPE    = environ.get("MYSQLDRIVER_SECRET_SCOPE", "kv") # The Databricks secret scope.

# Define connection defaults.
DEFAULT_HOST      = "localhost"
DEFAULT_PORT      = "3306"
DEFAULT_DELIMITER = "&"

# Define protocol aliases and the connection mode each one selects.
# Only the aliases are validated and embedded in the url, the modes are for reference.
# https://dev.mysql.com/doc/connector-j/en/connector-j-reference-jdbc-url-format.html
DEFAULT_PROTOCOLS = MappingProxyType({
    "loadbalance" : "loadBalance",
    "replication" : "replication"
})

# Define custom parameters every connection url starts out with.
DEFAULT_CUSTOM_PARAMS = MappingProxyType({})

# Define default properties for MySQL performance.
# https://cdn.oreillystatic.com/en/assets/1/event/21/Connector_J%20Performance%20Gems%20Presentation.pdf
DEFAULT_PROPERTIES = MappingProxyType({
    "prepStmtCacheSize"        : 250,   # Number of prepared statements cached per connection.
    "prepStmtCacheSqlLimit"    : 2048,  # Maximum length of a prepared statement that gets cached.
    "cachePrepStmts"           : True,  # The two above have no effect unless the cache is enabled.
    "useServerPrepStmts"       : True,
    "useLocalSessionState"     : True,
    "rewriteBatchedStatements" : True,
    "cacheResultSetMetadata"   : True,
    "cacheServerConfiguration" : True,
    "elideSetAutoCommits"      : True,
    "maintainTimeStats"        : False
})

# Lazily initialized ssm client.
SSM_CLIENT = None


class ConfigurationError(Exception):
    pass


class MissingRequiredProperty(ConfigurationError):
    pass


class InvalidProtocol(ConfigurationError):
    pass


# Database families with a driver.
class DriverType(Enum):
    MYSQL = "mysql"


# Return the spelling of key used in configuration or None if key is not present.
def find_key(config, key):
    key = key.lower()
    for existing in config:
        if isinstance(existing, str) and existing.lower() == key:
            return existing
    return None

# Return property value or default if property is not present.
def get_property(config, key, default=None):
    existing = find_key(config, key)
    return default if existing is None else config[existing]

# Set property value keeping the spelling already used in configuration.
def set_property(config, key, value):
    existing = find_key(config, key)
    config[key if existing is None else existing] = value

# Cast property value to the string representation used in connection urls.
def cast_string(value):
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)

# Parse delimited query string into dictionary.
def parse_query_string(query, delimiter=DEFAULT_DELIMITER):
    if not isinstance(query, str):
        raise Exception("Invalid query")
    query = query.strip().lstrip("?")
    if query == "":
        return {}
    return dict(parse_qsl(query, keep_blank_values=True, separator=delimiter))

# Serialize dictionary into url encoded delimited query string.
def to_query_string(params, delimiter=DEFAULT_DELIMITER):
    return delimiter.join(urlencode([(str(key), cast_string(value))]) for key, value in params.items())


# MySQL JDBC driver.
# https://dev.mysql.com/doc/connector-j/en/connector-j-usagenotes-connect-drivermanager.html
class MysqlDriver:

    name                  = "Mysql"
    driver_type           = DriverType.MYSQL
    driver_class_name     = "com.mysql.cj.jdbc.Driver"
    default_delimiter     = DEFAULT_DELIMITER
    default_custom_params = DEFAULT_CUSTOM_PARAMS
    default_properties    = DEFAULT_PROPERTIES

    # Build connection url, normalizing custom parameters and adding default properties to config.
    def build_connection_url(self, config):
        if not isinstance(config, MutableMapping):
            raise Exception("Invalid configuration")

        # Validate mandatory database.
        database = cast_string(get_property(config, "database"))
        if database.strip() == "":
            raise MissingRequiredProperty(f"The database property is required for the {self.name} JDBC Driver")

        # Fall back to localhost if host is not present.
        host = cast_string(get_property(config, "host"))
        if host == "":
            host = DEFAULT_HOST

        # Validate optional protocol.
        protocol = cast_string(get_property(config, "protocol"))
        if protocol != "" and protocol not in DEFAULT_PROTOCOLS:
            raise InvalidProtocol(
                f"The protocol '{protocol}' is not valid for the {self.name} JDBC Driver. "
                f"Available protocols are {', '.join(DEFAULT_PROTOCOLS)}"
            )
        if protocol != "":
            protocol += ":"

        # Fall back to default port if port is not present or zero.
        port = cast_string(get_property(config, "port"))
        if port in ("", "0"):
            port = DEFAULT_PORT

        return f"jdbc:mysql:{protocol}//{host}:{port}/{database}?{self.__build_query_string(config)}"

    # Merge custom parameters, default properties and credentials into query string.
    def __build_query_string(self, config):
        params = dict(self.default_custom_params)

        # Convert custom parameters given as query string to dictionary.
        custom = get_property(config, "custom")
        if isinstance(custom, str):
            custom = parse_query_string(custom, self.default_delimiter)
            set_property(config, "custom", custom)
        if isinstance(custom, Mapping):
            params.update(custom)

        # Add default properties to config unless present, custom parameters take precedence in url.
        for key, value in self.default_properties.items():
            if find_key(config, key) is None:
                set_property(config, key, value)
            if find_key(params, key) is None:
                params[key] = get_property(config, key)

        # Add credentials if present.
        username = cast_string(get_property(config, "username"))
        if username != "":
            params["user"] = username
        password = cast_string(get_property(config, "password"))
        if password != "":
            params["password"] = password

        return to_query_string(params, self.default_delimiter)


# Define available drivers.
DRIVERS = MappingProxyType({
    DriverType.MYSQL : MysqlDriver()
})

# Return driver by type or case insensitive name, or None if no driver was found.
def get_driver(driver):
    if isinstance(driver, DriverType):
        return DRIVERS.get(driver)
    elif isinstance(driver, str):
        for candidate in DRIVERS.values():
            if candidate.name.lower() == driver.strip().lower():
                return candidate
        return None
    else:
        raise Exception("Invalid driver")


# Return active spark session.
def get_spark():
    return SparkSession.builder.getOrCreate()

# Return Databricks utilities.
def get_dbutils():
    from pyspark.dbutils import DBUtils
    return DBUtils(get_spark())

# Return ssm client, creating it the first time function is called.
def get_ssm_client():
    global SSM_CLIENT
    if SSM_CLIENT is None:
        aws_region    = get_spark().conf.get("spark.databricks.clusterUsageTags.region")
        boto3_session = boto3.Session(region_name = aws_region)
        SSM_CLIENT    = boto3_session.client("ssm")
    return SSM_CLIENT

# Return secret if value contains reference to secret, otherwise return value.
def resolve_secret(value):
    if isinstance(value, str) and len(value) > 2 and value.startswith("<") and value.endswith(">"):
        if PARAMETER_STORE is not None:
            return get_ssm_client().get_parameter(Name=value[1:-1], WithDecryption=True)["Parameter"]["Value"]
        else:
            return get_dbutils().secrets.get(scope=SECRET_SCOPE, key=value[1:-1])
    else:
        return value

# Return new dictionary containing configuration with secrets resolved.
def get_configuration_with_secrets(config):
    if not isinstance(config, dict):
        raise Exception("Invalid configuration")
    return {key: resolve_secret(value) for key, value in config.items()}


# Return list of configurations from all yaml files in directory.
def parse_directory(path):
    items = []
    for file in sorted(listdir(path)):
        if not isfile(join(path, file)) or not file.lower().endswith((".yml", ".yaml")):
            continue
        with open(join(path, file), "r") as stream:
            content = safe_load(stream)
        if content is None:
            continue
        if not isinstance(content, list):
            raise Exception(f"Invalid configuration file {file}")
        items += content
    return items

# Return dictionary of connection configurations keyed by connection name.
def load_connections(path):
    connections = {}
    for config in parse_directory(path):
        if not isinstance(config, dict):
            raise Exception(f"Invalid connection in {path}")
        connection_name = get_property(config, "ConnectionName")
        if connection_name is None:
            raise Exception(f"Missing ConnectionName in {path}")
        if not isinstance(connection_name, str) or connection_name.strip() == "":
            raise Exception(f"Invalid ConnectionName in {path}")
        if connection_name in connections:
            raise Exception(f"Duplicate ConnectionName {connection_name}")
        connections[connection_name] = config
    return connections

# Build connection url for every connection in directory, print status and return errors.
def check_connections(path):
    errors = {}
    for connection_name, config in load_connections(path).items():
        driver_name = get_property(config, "driver") or DriverType.MYSQL
        driver = get_driver(driver_name) if isinstance(driver_name, (str, DriverType)) else None
        if driver is None:
            errors[connection_name] = ConfigurationError(f"Unknown driver {driver_name} in {connection_name}")
            print(f"[Unknown]  {connection_name}")
            continue
        try:
            driver.build_connection_url(dict(config))
            print(f"[Valid]    {connection_name}")
        except ConfigurationError as e:
            errors[connection_name] = e
            print(f"[Invalid]  {connection_name}")
    for connection_name, error in errors.items():
        print(f"{connection_name}:")
        print(error)
    if not errors:
        print("No errors")
    return errors
