from stackctl.PARSERS.env_parser import EnvParser


def test_parse_from_string():
    content = """
KEY1=VALUE1
KEY2 = VALUE2
# This is a comment
KEY3="VALUE3" # Trailing comment
KEY4='VALUE4'
export KEY5=VALUE5
KEY6
"""
    env = EnvParser.parse_from_string(content)
    assert env['KEY1'] == 'VALUE1'
    assert env['KEY2'] == 'VALUE2'
    assert env['KEY3'] == 'VALUE3'
    assert env['KEY4'] == 'VALUE4'
    assert env['KEY5'] == 'VALUE5'
    assert 'KEY6' not in env


def test_values_are_not_expanded():
    env = EnvParser.parse_from_string("BASE=/srv\nPATHS=${BASE}/app\n")
    assert env['PATHS'] == '${BASE}/app'


def test_parse_file(tmp_path):
    path = tmp_path / ".env"
    path.write_text("XDEBUG_ENABLED=true\n")
    assert EnvParser.parse(str(path)) == {'XDEBUG_ENABLED': 'true'}
